import re
from typing import Optional

from carecall.flow import FlowMap
from carecall.scripts import default_system_prompt, get_script_config

BASE_SYSTEM_PROMPT = """You are a Penn Medicine follow-up call agent. Be warm, empathetic, and conversational while strictly following the script provided.

PERSONALITY:
- Speak naturally and warmly, like a caring healthcare worker
- Be patient and understanding
- Never claim to be human, but don't emphasize being an AI
- Keep responses concise and clear

USE EXACT SCRIPT WORDING:
- You MUST use the EXACT questions from the script VERBATIM. Do NOT paraphrase or simplify.
- The script questions contain specific details (medication names, equipment names) that MUST be included.
- Do NOT simplify to generic phrases like "Are you taking your medications as directed?"

BEHAVIOR RULES:
1. ALWAYS start with the greeting AND immediately continue to the FIRST QUESTION in the same breath.
2. Follow the script steps IN ORDER. Do not skip steps or go back.
3. Ask each question EXACTLY as written in the script, with all specific details.
4. Wait for the patient to respond ONLY after asking a question, then move to the next step.
5. ALWAYS acknowledge the patient's response before asking the next question:
   - Positive: "That's great to hear.", "I'm glad to hear that."
   - Neutral: "Got it, thank you.", "I understand."
   - Concerning: "I'm sorry to hear that.", "Thank you for sharing that with me."
6. Listen for keywords that match the response options.
7. If the patient's response doesn't clearly match an option, politely ask for clarification.
8. If the patient reports ANY concerning symptoms or urgent issues, say: "I'll make sure the care team knows about this, and someone will call you back soon." THEN CONTINUE to the next step in the script.
9. You MUST complete ALL steps in the script before asking the closing question.
10. Only ask "Is there anything else I can help you with today?" AFTER all steps are complete.
11. Only say goodbye AFTER the patient confirms they have no more questions.
12. The call MUST end with the word "goodbye".

RESPONSE MATCHING:
- Match patient responses to the option keywords listed in each step
- Accept natural variations (e.g., "yeah" = "yes", "nope" = "no")
- If unclear, say "I didn't quite catch that" and rephrase the question

===== SCRIPT TO FOLLOW =====

"""

DEFAULT_GREETING = "Hello, this is Penn Medicine calling about your recent visit."

CALLBACK_COMMITMENT = "We'll have someone from our care team call you back."

MODE_GUIDANCE = {
    "deterministic": "MODE: DETERMINISTIC. Read every question verbatim and do not ask follow-ups outside the script.",
    "explorative": (
        "MODE: EXPLORATIVE. Cover the same topics in the same order, but you may ask one brief "
        "open-ended follow-up when the patient's answer invites it."
    ),
}

PLACEHOLDER = "[patient_name]"


def build_full_system_prompt(script_content: str, greeting: Optional[str] = None) -> str:
    prompt = BASE_SYSTEM_PROMPT
    if greeting:
        prompt += f'GREETING (say this FIRST, exactly as written):\n"{greeting}"\n\n'
    return prompt + script_content


def fill_placeholders(text: str, patient_name: str = "") -> str:
    """Substitute the patient name, tidying greetings left awkward by an empty name."""
    filled = text.replace(PLACEHOLDER, (patient_name or "").strip())
    filled = re.sub(r"Hi\s+,", "Hi,", filled)
    filled = re.sub(r"^Hi,\s*this is", "Hello, this is", filled, flags=re.IGNORECASE)
    return filled


def render_flow_script(flow_map: FlowMap) -> str:
    lines = [f"SCRIPT: {flow_map.title}", ""]
    for number, step in enumerate(flow_map.steps, start=1):
        if step.is_statement:
            lines.append(f'{number}. [{step.id}] Say, then continue: "{step.question}"')
        else:
            lines.append(f'{number}. [{step.id}] Ask: "{step.question}"')

        for option in step.options:
            hints = ""
            if option.keywords:
                hints = f" (also: {', '.join(option.keywords)})"
            if option.is_terminal:
                target = "end the call with a goodbye"
            else:
                target = f"go to [{option.next}]"
            line = f"   - {option.label}{hints} -> {target}"
            if option.triggers_callback:
                line += f'. First say: "{CALLBACK_COMMITMENT}"'
            lines.append(line)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def assemble_instructions(
    script_content: str,
    greeting: Optional[str] = None,
    mode: str = "deterministic",
    patient_name: str = "",
) -> str:
    """Full instruction text for a call: base template, mode guidance, greeting, script."""
    guidance = MODE_GUIDANCE.get(mode, MODE_GUIDANCE["deterministic"])
    content = f"{guidance}\n\n{fill_placeholders(script_content, patient_name)}"
    if greeting:
        greeting = fill_placeholders(greeting, patient_name)
    return build_full_system_prompt(content, greeting)


def get_system_prompt(script_choice: str = "ed-followup-v1", mode: str = "deterministic", patient_name: str = "") -> str:
    config = get_script_config(script_choice)
    if config is not None and config.system_prompt:
        prompt = config.system_prompt
    else:
        prompt = default_system_prompt(patient_name)
    if mode == "explorative":
        prompt = f"{MODE_GUIDANCE['explorative']}\n\n{prompt}"
    return prompt
