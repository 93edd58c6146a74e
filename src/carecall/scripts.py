from dataclasses import dataclass
from typing import Optional

from carecall.flow import FlowMap, FlowOption, FlowStep

DEFAULT_FLOW_MAP = FlowMap(
    title="ED Follow-up Call",
    steps=(
        FlowStep(
            id="language",
            label="Language Selection",
            info="English or Español",
            question="To continue in English, please say 'English'. Para continuar en español, diga 'Español'.",
            options=(
                FlowOption(label="English", next="confirm"),
                FlowOption(label="Español", next="confirm"),
            ),
        ),
        FlowStep(
            id="confirm",
            label="Identity Confirmation",
            info="Confirm recent ER departure",
            question="Our records show you recently left the emergency department. Is that correct?",
            options=(
                FlowOption(label="Yes", next="general_status"),
                FlowOption(label="No", next="END (wrong number)"),
            ),
        ),
        FlowStep(
            id="general_status",
            label="General Status",
            info="How are they feeling",
            question="How are you feeling since leaving the ER? Say 'As expected' or 'Have a concern'.",
            options=(
                FlowOption(label="As expected", next="reason"),
                FlowOption(label="Have a concern", next="reason", triggers_callback=True),
            ),
        ),
        FlowStep(
            id="reason",
            label="Reason for Leaving",
            info="Why left before visit complete",
            question="Why did you leave the ER before your visit was finished?",
            options=(
                FlowOption(label="Wait was too long", next="disposition"),
                FlowOption(label="I felt better", next="disposition"),
                FlowOption(label="I felt worse", next="disposition"),
            ),
        ),
        FlowStep(
            id="disposition",
            label="Disposition",
            info="Where they went after leaving",
            question="Where did you go after leaving? Say 'Went home', 'Went to another ER', or 'Went somewhere else'.",
            options=(
                FlowOption(label="Went home", next="closing"),
                FlowOption(label="Went to another ER", next="closing"),
                FlowOption(label="Went somewhere else", next="closing"),
            ),
        ),
        FlowStep(
            id="closing",
            label="Closing",
            type="statement",
            info="Disclaimer and goodbye",
            question=(
                "If you have any serious health concerns, please contact your doctor or seek "
                "emergency care. Thank you for your time today. Take care, goodbye!"
            ),
        ),
    ),
)


@dataclass(frozen=True)
class ScriptConfig:
    id: str
    name: str
    voice: str = "cedar"
    # Empty means "use the default prompt for the patient"
    system_prompt: str = ""


SHORT_SCRIPT_PROMPT = """Penn Medicine LGH ED follow-up call (short version). Be warm and conversational.

START: "Hello, this is Penn Medicine calling about your recent ER visit. To continue in English, say 'English'. Para español, diga 'Español'."

ENGLISH FLOW:
1. English -> "Thanks for answering. Our records show you left before your visit was complete. Is that correct?"
2. Yes -> "How are you feeling? Say 'As expected' or 'Have a concern'."
   No -> "Sorry to bother you. Goodbye." [END]
3. Answer status -> "Why did you leave? Say 'Wait too long', 'Felt better', or 'Felt worse'."
   If they have a concern, first say: "We'll have someone from our care team call you back."
4. Answer reason -> "Where did you go after? Say 'Home', 'Another ER', or 'Somewhere else'."
5. Answer -> "Thank you. If you have health concerns, contact your doctor. Take care, goodbye!" [END]

Accept natural variations. Keep responses brief."""


SCRIPT_CONFIGS = (
    ScriptConfig(id="ed-followup-v1", name="ED Follow-up (Standard)"),
    ScriptConfig(id="ed-followup-short", name="ED Follow-up (Short)", system_prompt=SHORT_SCRIPT_PROMPT),
)


def get_script_config(script_id: str) -> Optional[ScriptConfig]:
    for config in SCRIPT_CONFIGS:
        if config.id == script_id:
            return config
    return None


def default_system_prompt(patient_name: str = "") -> str:
    """The standard bilingual ED follow-up script, greeting the patient by name when known."""
    if patient_name:
        greeting = (
            f"Hi {patient_name}, this is Penn Medicine Lancaster General Health calling "
            "about your recent emergency room visit."
        )
    else:
        greeting = (
            "Hello, this is Penn Medicine Lancaster General Health calling "
            "about your recent emergency room visit."
        )

    return f"""Penn Medicine LGH ED follow-up call. Be warm and conversational.

START (say this first): "{greeting} To continue in English, please say 'English'. Para continuar en español, por favor diga 'Español'."

ENGLISH FLOW:
1. User says English -> "Thank you. We care about your recovery and want to check in with you. I'll ask you a few short questions about how you're doing. Our records show you recently left the emergency department before your visit was complete. Is that correct? Please say 'Yes' or 'No'."
2. User confirms Yes -> "Ok, thank you for confirming. This call has three quick questions. You can say 'Repeat' anytime to hear a question again. First, how are you feeling since leaving the ER? Please say 'As expected' if you're feeling as expected, or say 'Have a concern' if you'd like someone to call you back."
   User says No -> "No problem, sorry to have bothered you. Goodbye." [END]
3. User says expected -> "I'm glad to hear that. Next question: Why did you leave the ER before your visit was finished? You can say 'Wait was too long', 'I felt better', or 'I felt worse'."
   User says concern -> "I understand. We'll have someone from our care team call you back. Next question: Why did you leave the ER before your visit was finished? You can say 'Wait was too long', 'I felt better', or 'I felt worse'."
4. User answers reason -> "Got it, thank you. Last question: Where did you go after leaving? Please say 'Went home', 'Went to another ER', or 'Went somewhere else'."
5. User answers disposition -> "Got it, thank you. If you have any serious health concerns, please contact your doctor or seek emergency care. Thank you for your time today. Take care, goodbye!" [END]

SPANISH FLOW:
1. User says Español -> "Gracias. Nos preocupamos por su recuperación y queremos saber cómo está. Le haré unas preguntas cortas sobre cómo se encuentra. Nuestros registros muestran que usted salió del departamento de emergencias antes de completar su visita. ¿Es correcto? Por favor diga 'Sí' o 'No'."
2. User confirms Sí -> "Está bien, gracias por confirmar. Esta llamada tiene tres preguntas rápidas. Puede decir 'Repetir' en cualquier momento para escuchar una pregunta de nuevo. Primero, ¿cómo se siente desde que salió de la sala de emergencias? Por favor diga 'Como esperaba' si se siente como esperaba, o diga 'Tengo una preocupación' si desea que alguien le devuelva la llamada."
   User says No -> "No hay problema, disculpe la molestia. Adiós." [END]
3. User says esperaba -> "Me alegra escuchar eso. Siguiente pregunta: ¿Por qué salió de emergencias antes de terminar su visita? Puede decir 'La espera fue muy larga', 'Me sentí mejor' o 'Me sentí peor'."
   User says preocupación -> "Entiendo. Alguien de nuestro equipo de atención le devolverá la llamada. Siguiente pregunta: ¿Por qué salió de emergencias antes de terminar su visita? Puede decir 'La espera fue muy larga', 'Me sentí mejor' o 'Me sentí peor'."
4. User answers reason -> "Entendido, gracias. Última pregunta: ¿A dónde fue después de salir? Por favor diga 'Fui a casa', 'Fui a otra sala de emergencias' o 'Fui a otro lugar'."
5. User answers disposition -> "Entendido, gracias. Si tiene alguna preocupación de salud seria, por favor contacte a su médico o busque atención de emergencia. Gracias por su tiempo hoy. ¡Cuídese, adiós!" [END]

If unclear: "Sorry, I didn't catch that." then repeat current question.
Accept natural variations: "home"/"went home", "yes"/"yeah"/"correct", etc."""
