"""Localized reply templates and rule-based input-language detection.

Every text the engine produces without a model call (greetings,
clarification fallbacks, apologies, limit notices) comes from here, in
English, Spanish, German or French. Unknown languages fall back to English.
"""

from typing import Dict, Iterable, Optional
import re

DEFAULT_LANGUAGE = "en"

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "de": "German",
    "fr": "French",
}

# Short function words and greetings that reliably mark a language
LANGUAGE_TOKENS = {
    "es": {
        "hola", "buenos", "buenas", "gracias", "por", "favor", "muéstrame", "muestrame",
        "mis", "tareas", "clientes", "crear", "buscar", "encontrar", "cuál", "cual",
        "qué", "número", "numero", "cuenta", "dame", "quiero", "necesito", "el", "los",
        "las", "una", "con", "para", "y", "es", "está", "esta", "mi", "tengo", "puedes",
    },
    "de": {
        "hallo", "moin", "servus", "danke", "bitte", "zeige", "zeig", "meine", "mein",
        "aufgaben", "kunden", "erstelle", "suche", "finde", "welche", "wie", "was",
        "ist", "und", "der", "die", "das", "nicht", "ich", "mir", "ein", "eine", "kannst",
    },
    "fr": {
        "bonjour", "salut", "merci", "montre", "moi", "mes", "tâches", "taches",
        "clients", "créer", "creer", "cherche", "trouve", "quel", "quelle", "est",
        "et", "le", "les", "une", "pour", "avec", "je", "veux", "peux", "vous", "pas",
    },
    "en": {
        "hi", "hello", "hey", "thanks", "please", "show", "my", "me", "tasks",
        "customers", "create", "find", "search", "what", "which", "is", "and", "the",
        "a", "an", "for", "with", "i", "want", "can", "you", "need",
    },
}

# Characters that only occur in one of the supported languages
LANGUAGE_MARKS = {
    "es": set("ñ¿¡"),
    "de": set("ßäöü"),
    "fr": set("çœàèêâîû"),
}

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


def language_hint(text: str) -> Optional[str]:
    """Supported language of ``text`` when the evidence is unambiguous.

    The best language must score strictly higher than every other one and its
    vocabulary must cover at least half of the words, otherwise None. Input in
    a language outside the supported set (Italian, Portuguese, ...) shares a
    few short words with them and must not be mistaken for one.
    """

    if not text or not text.strip():
        return None

    lowered = text.lower()
    tokens = _TOKEN_PATTERN.findall(lowered)
    if not tokens:
        return None

    hits = {language: 0 for language in LANGUAGE_NAMES}
    for token in tokens:
        for language, vocabulary in LANGUAGE_TOKENS.items():
            if token in vocabulary:
                hits[language] += 1

    scores = dict(hits)
    for language, marks in LANGUAGE_MARKS.items():
        if any(char in marks for char in lowered):
            scores[language] += 2

    best = max(scores.values())
    leaders = [language for language, score in scores.items() if score == best]
    if best == 0 or len(leaders) > 1:
        return None
    language = leaders[0]
    if hits[language] * 2 < len(tokens):
        return None
    return language


def detect_language(text: str) -> str:
    """Language for templated replies, English when detection is not confident"""
    return language_hint(text) or DEFAULT_LANGUAGE


PHRASES: Dict[str, Dict[str, str]] = {
    "en": {
        "greeting": "Hello! How can I help you? I can help with: {capabilities}.",
        "clarification_default": "I'm not sure what you need. Could you tell me a bit more?",
        "clarification_choose": "Please reply with the number of an option.",
        "no_results": "I couldn't process your request. Could you be more specific?",
        "error": "Sorry, something went wrong while processing your request. Please try again.",
        "error_routing": "Sorry, I couldn't understand that request. Could you rephrase it?",
        "error_timeout": "Sorry, that took too long to process. Please try again in a moment.",
        "limit_exceeded": (
            "You've reached the maximum of {limit} conversations. "
            "Delete or unpin a conversation to start a new one."
        ),
        "handler_failed": (
            "Sorry, I couldn't complete the {capability} request right now. "
            "You can try again later or ask me something else."
        ),
        "handler_done": "The {capability} request was completed.",
    },
    "es": {
        "greeting": "¡Hola! ¿En qué puedo ayudarte? Puedo ayudarte con: {capabilities}.",
        "clarification_default": "No estoy seguro de lo que necesitas. ¿Podrías darme más detalles?",
        "clarification_choose": "Responde con el número de una opción.",
        "no_results": "No pude procesar tu solicitud. ¿Podrías ser más específico?",
        "error": "Lo siento, ocurrió un error al procesar tu solicitud. Por favor, intenta de nuevo.",
        "error_routing": "Lo siento, no pude entender tu solicitud. ¿Podrías reformularla?",
        "error_timeout": "Lo siento, la solicitud tardó demasiado. Por favor, intenta de nuevo en un momento.",
        "limit_exceeded": (
            "Alcanzaste el máximo de {limit} conversaciones. "
            "Elimina o desancla una conversación para iniciar una nueva."
        ),
        "handler_failed": (
            "Lo siento, no pude completar la solicitud de {capability} en este momento. "
            "Puedes intentarlo más tarde o preguntarme otra cosa."
        ),
        "handler_done": "La solicitud de {capability} se completó.",
    },
    "de": {
        "greeting": "Hallo! Wie kann ich helfen? Ich kann dir helfen bei: {capabilities}.",
        "clarification_default": "Ich bin nicht sicher, was du brauchst. Kannst du mehr Details nennen?",
        "clarification_choose": "Bitte antworte mit der Nummer einer Option.",
        "no_results": "Ich konnte deine Anfrage nicht verarbeiten. Kannst du genauer sein?",
        "error": "Entschuldigung, bei der Verarbeitung ist ein Fehler aufgetreten. Bitte versuche es erneut.",
        "error_routing": "Entschuldigung, ich habe die Anfrage nicht verstanden. Kannst du sie umformulieren?",
        "error_timeout": "Entschuldigung, das hat zu lange gedauert. Bitte versuche es gleich noch einmal.",
        "limit_exceeded": (
            "Du hast das Maximum von {limit} Unterhaltungen erreicht. "
            "Lösche oder löse eine Unterhaltung, um eine neue zu beginnen."
        ),
        "handler_failed": (
            "Entschuldigung, die Anfrage zu {capability} konnte gerade nicht abgeschlossen werden. "
            "Du kannst es später erneut versuchen oder etwas anderes fragen."
        ),
        "handler_done": "Die Anfrage zu {capability} wurde abgeschlossen.",
    },
    "fr": {
        "greeting": "Bonjour ! Comment puis-je vous aider ? Je peux vous aider avec : {capabilities}.",
        "clarification_default": "Je ne suis pas sûr de ce dont vous avez besoin. Pouvez-vous préciser ?",
        "clarification_choose": "Répondez avec le numéro d'une option.",
        "no_results": "Je n'ai pas pu traiter votre demande. Pouvez-vous être plus précis ?",
        "error": "Désolé, une erreur s'est produite lors du traitement de votre demande. Veuillez réessayer.",
        "error_routing": "Désolé, je n'ai pas compris votre demande. Pouvez-vous la reformuler ?",
        "error_timeout": "Désolé, le traitement a pris trop de temps. Veuillez réessayer dans un instant.",
        "limit_exceeded": (
            "Vous avez atteint le maximum de {limit} conversations. "
            "Supprimez ou désépinglez une conversation pour en commencer une nouvelle."
        ),
        "handler_failed": (
            "Désolé, je n'ai pas pu traiter la demande {capability} pour le moment. "
            "Vous pouvez réessayer plus tard ou me demander autre chose."
        ),
        "handler_done": "La demande {capability} a été traitée.",
    },
}


def localize(key: str, language: str, **values) -> str:
    """Render a phrase in ``language``, falling back to English"""
    table = PHRASES.get(language, PHRASES[DEFAULT_LANGUAGE])
    template = table.get(key, PHRASES[DEFAULT_LANGUAGE][key])
    return template.format(**values)


def language_name(language: str) -> str:
    return LANGUAGE_NAMES.get(language, LANGUAGE_NAMES[DEFAULT_LANGUAGE])


def join_items(items: Iterable[str]) -> str:
    return ", ".join(items)
