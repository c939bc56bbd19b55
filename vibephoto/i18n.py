from __future__ import annotations

from typing import Dict


SUPPORTED_LANGS = ("pt", "en")


def normalize_lang(code: str | None) -> str:
    if not code:
        return "pt"
    value = code.lower()
    if value.startswith("en"):
        return "en"
    return "pt"


BASE_PT: Dict[str, str] = {
    # Errors shown inline
    "validation_error": "Dados inválidos: {detail}",
    "insufficient_credits": (
        "Créditos insuficientes. Você precisa de {required} {required_label} e tem {available}. "
        "Compre um pacote de créditos ou aguarde a renovação do plano."
    ),
    "not_found": "Registro não encontrado.",
    "unauthorized": "Faça login para continuar.",
    # Generic failures (credits are returned automatically)
    "provider_error": "Não foi possível processar sua solicitação agora. Os créditos foram devolvidos.",
    "storage_error": "Não foi possível salvar o resultado. Os créditos foram devolvidos.",
    "internal_error": "Erro inesperado. Tente novamente em instantes.",
    # Job failures
    "storage_failed": "Falha ao salvar o resultado: {detail}",
    "no_output": "O provedor não retornou nenhum resultado.",
    "job_failed": "O processamento falhou.",
    "job_cancelled": "O processamento foi cancelado.",
    "dispatch_failed": "Falha ao iniciar o processamento: {detail}",
    "stuck_pending": "O processamento não foi iniciado a tempo.",
    # Timeouts by kind
    "timeout_training": "O treinamento demorou mais que o esperado ({minutes} min). Tente novamente ou contate o suporte.",
    "timeout_generation": "A geração demorou mais que o esperado ({minutes} min). Tente novamente.",
    "timeout_upscale": "O upscale demorou mais que o esperado ({minutes} min). Tente novamente.",
    "timeout_video": "A geração de vídeo demorou mais que o esperado ({minutes} min). Tente novamente.",
    "timeout_edit": "A edição demorou mais que o esperado ({minutes} min). Tente novamente.",
    # Ledger descriptions
    "tx_generation": "Geração de {count} {images_label}",
    "tx_training": "Criação de modelo IA: {name}",
    "tx_edit": "Edição de imagem",
    "tx_upscale": "Upscale de imagem",
    "tx_video": "Geração de vídeo ({duration}s)",
    "tx_refund": "Devolução de créditos: {reason}",
    "tx_purchase": "Compra de pacote de créditos: {name}",
    "tx_subscription": "Renovação de assinatura - {plan}",
    "tx_expiration": "Expiração do pacote: {name}",
    "tx_adjustment": "Ajuste manual ({operation}) - {reason}",
    "admin_package": "Créditos adicionados pelo suporte",
    "progress_training": "Treinando seu modelo...",
    "progress_generation": "Gerando suas fotos...",
    "progress_edit": "Editando sua imagem...",
    "progress_upscale": "Melhorando sua imagem...",
    "progress_video": "Gerando seu vídeo...",
}

BASE_EN: Dict[str, str] = {
    "validation_error": "Invalid input: {detail}",
    "insufficient_credits": (
        "Insufficient credits. You need {required} {required_label} and have {available}. "
        "Buy a credit package or wait for your plan to renew."
    ),
    "not_found": "Record not found.",
    "unauthorized": "Please sign in to continue.",
    "provider_error": "We could not process your request right now. Your credits were returned.",
    "storage_error": "We could not save the result. Your credits were returned.",
    "internal_error": "Unexpected error. Please try again shortly.",
    "storage_failed": "Failed to store the result: {detail}",
    "no_output": "The provider returned no output.",
    "job_failed": "Processing failed.",
    "job_cancelled": "Processing was cancelled.",
    "dispatch_failed": "Failed to start processing: {detail}",
    "stuck_pending": "Processing did not start in time.",
    "timeout_training": "Training took longer than expected ({minutes} min). Try again or contact support.",
    "timeout_generation": "Generation took longer than expected ({minutes} min). Try again.",
    "timeout_upscale": "Upscale took longer than expected ({minutes} min). Try again.",
    "timeout_video": "Video generation took longer than expected ({minutes} min). Try again.",
    "timeout_edit": "Editing took longer than expected ({minutes} min). Try again.",
    "tx_generation": "Generation of {count} {images_label}",
    "tx_training": "AI model training: {name}",
    "tx_edit": "Image edit",
    "tx_upscale": "Image upscale",
    "tx_video": "Video generation ({duration}s)",
    "tx_refund": "Credit refund: {reason}",
    "tx_purchase": "Credit package purchase: {name}",
    "tx_subscription": "Subscription renewal - {plan}",
    "tx_expiration": "Package expired: {name}",
    "tx_adjustment": "Manual adjustment ({operation}) - {reason}",
    "admin_package": "Credits added by support",
    "progress_training": "Training your model...",
    "progress_generation": "Generating your photos...",
    "progress_edit": "Editing your image...",
    "progress_upscale": "Upscaling your image...",
    "progress_video": "Generating your video...",
}

PLURALS: Dict[str, Dict[str, tuple[str, str]]] = {
    "pt": {"credit": ("crédito", "créditos"), "image": ("imagem", "imagens")},
    "en": {"credit": ("credit", "credits"), "image": ("image", "images")},
}

TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "pt": BASE_PT,
    "en": BASE_EN,
}


def t(lang: str, key: str) -> str:
    normalized = normalize_lang(lang)
    return TRANSLATIONS.get(normalized, BASE_PT).get(key, BASE_PT.get(key, key))


def plural(lang: str, word: str, count: int) -> str:
    forms = PLURALS[normalize_lang(lang)].get(word)
    if not forms:
        return word
    return forms[0] if abs(int(count)) == 1 else forms[1]


def tf(lang: str, key: str, **kwargs: object) -> str:
    base = t(lang, key)
    try:
        return base.format(**kwargs)
    except (KeyError, IndexError, ValueError):
        return base
