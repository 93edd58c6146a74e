"""Script generation: free-text script or description -> greeting, script text and flow map.

The runtime only ever consumes the resulting :class:`FlowMap`; the flow is
validated with ``FlowMap.from_dict`` before anything is returned, so a
generated graph with dangling ``next`` references is rejected here.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Sequence

from carecall.errors import FlowMapError, ScriptGenerationError
from carecall.flow import FlowMap, FlowOption
from carecall.llm import UpstreamError, extract_json
from carecall.matching import FINAL_PHRASES

logger = logging.getLogger(__name__)

DEFAULT_GENERATION_MODEL = "gpt-4o"
DEFAULT_OPTIONS_MODEL = "gpt-4o-mini"

CONVERSION_INSTRUCTIONS = """You convert medical IVR content into a voice-agent script AND a conversation flow map for a realtime voice agent.

Return ONLY valid JSON with this exact schema:
{
  "greeting": "string - the first thing the agent says, starting 'Hi [patient_name], this is Penn Medicine calling...'",
  "script_content": "string - the numbered script the agent follows after the greeting",
  "variables": ["string - placeholders used, e.g. patient_name"],
  "final_phrases": ["goodbye", "bye", "take care", ...],
  "flow": {
    "title": "string - title of this script",
    "steps": [
      {
        "id": "string - unique step identifier like 'language', 'confirm', 'status'",
        "label": "string - display label like 'Language Selection'",
        "type": "question | statement",
        "question": "string - the question (or statement) spoken at this step",
        "info": "string - brief description of what this step collects",
        "options": [
          {
            "label": "string - display label like 'English' or 'Yes'",
            "keywords": ["ways a patient might say this"],
            "next": "string - next step id, 'end_call' or 'END (reason)'",
            "triggers_callback": false
          }
        ]
      }
    ]
  }
}

AGENT PERSONALITY:
Warm, helpful, conversational; never claim to be human.

RULES FOR greeting and script_content:
1. Use EXACTLY '[patient_name]' as the name placeholder
2. Use empathetic, human-like language ("I understand", "Thank you for sharing that")
3. The LAST sentence MUST contain "goodbye" to trigger call end detection
4. Preserve clinical meaning - no extra medical advice beyond a disclaimer
5. For DETERMINISTIC mode: enforce verbatim reading of key phrases
6. For EXPLORATIVE mode: same topics and order, but allow open-ended follow-ups
7. If the patient expresses concerning symptoms, say "I'll make sure the care team knows, and someone will call you back soon."
8. BEFORE goodbye, ask "Is there anything else I can help you with?"
9. Include bilingual support (English/Spanish) if the original script has it
10. Handle "repeat" requests by repeating the current question

RULES FOR flow:
1. Each step must have a unique "id" (lowercase, short identifiers)
2. Options should cover expected user responses
3. "next" MUST reference another step's id, "end_call", or "END (reason)"
4. Include all branching paths (e.g., both Yes and No responses)
5. Mark options that should lead to a clinical callback with "triggers_callback": true
6. Spoken-only steps (disclaimers, closings) use "type": "statement"
7. Flow should match the conversation structure in script_content"""


def _options_instructions(count: int) -> str:
    return f"""You generate response options for medical IVR questions.
Return ONLY a JSON object: {{"options": [{{"label": string, "keywords": [string], "next": string}}]}}

RULES:
1. Generate EXACTLY {count} options
2. Options should be specific and clinically meaningful for triage
3. Include severity gradations where appropriate (mild/moderate/severe)
4. Always include a "concerning/needs callback" option if the question relates to symptoms or problems
5. Each option needs a 'keywords' array with 3-5 ways a patient might express that answer
6. 'next' should be a logical next step ID (snake_case like "check_symptoms", "continue", "end_call")
7. Make options mutually exclusive and comprehensive
8. Order from most positive to most concerning"""


@dataclass(frozen=True)
class GeneratedScript:
    greeting: str
    script_content: str
    flow_map: FlowMap
    variables: list[str] = field(default_factory=list)
    final_phrases: list[str] = field(default_factory=lambda: list(FINAL_PHRASES))

    @classmethod
    def from_dict(cls, data: dict) -> "GeneratedScript":
        """Accepts both the wire shape (camelCase) and the model's raw output (snake_case)."""
        if not isinstance(data, dict):
            raise ValueError("Generated script must be an object")
        flow = data.get("flowMap") or data.get("flow")
        if flow is None:
            raise ValueError("Generated script has no flow map")
        script_content = data.get("scriptContent") or data.get("script_content") or ""
        if not script_content.strip():
            raise ValueError("Generated script has no script content")
        return cls(
            greeting=str(data.get("greeting") or "").strip(),
            script_content=script_content,
            flow_map=FlowMap.from_dict(flow),
            variables=[str(v) for v in data.get("variables") or []],
            final_phrases=[str(p) for p in data.get("finalPhrases") or data.get("final_phrases") or FINAL_PHRASES],
        )

    def to_dict(self) -> dict:
        return {
            "greeting": self.greeting,
            "scriptContent": self.script_content,
            "flowMap": self.flow_map.to_dict(),
            "variables": list(self.variables),
            "finalPhrases": list(self.final_phrases),
        }


def build_user_message(script: str, input_type: str = "script", mode: str = "deterministic") -> str:
    if mode == "explorative":
        mode_desc = "EXPLORATIVE (natural conversation, open-ended within topics)"
    else:
        mode_desc = "DETERMINISTIC (follow script verbatim)"

    if input_type == "prompt":
        return (
            f"Mode: {mode_desc}\n\n"
            "Task: Generate a complete IVR voice agent script AND flow map from this description.\n\n"
            f"User's description:\n{script}\n\n"
            "Generate a full conversation flow with greeting, questions, acknowledgments, and closing.\n"
            "Return the response as valid JSON with greeting, script_content, variables, final_phrases, and flow fields."
        )

    return (
        f"Mode: {mode_desc}\n\n"
        "Task: Convert this SMS/IVR script into a voice agent script AND flow map.\n\n"
        f"Original script:\n{script}\n\n"
        "Convert to a natural voice conversation format while preserving the clinical intent.\n"
        "Return the response as valid JSON with greeting, script_content, variables, final_phrases, and flow fields."
    )


async def generate_script(client, script: str, input_type: str = "script", mode: str = "deterministic") -> GeneratedScript:
    if not script or not script.strip():
        raise ScriptGenerationError("Script text is required")

    try:
        content = await client.chat(
            [
                {"role": "system", "content": CONVERSION_INSTRUCTIONS},
                {"role": "user", "content": build_user_message(script, input_type, mode)},
            ],
            model=os.getenv("OPENAI_GENERATION_MODEL", DEFAULT_GENERATION_MODEL),
            temperature=0.3,
            max_tokens=6000,
        )
    except UpstreamError as e:
        raise ScriptGenerationError(f"Failed to generate script: {e}") from e

    try:
        generated = GeneratedScript.from_dict(extract_json(content))
    except (ValueError, FlowMapError) as e:
        logger.warning("Generated script rejected: %s", e)
        raise ScriptGenerationError(f"Generated script is unusable: {e}") from e

    logger.info("Generated script %r with %d steps", generated.flow_map.title, len(generated.flow_map.steps))
    return generated


async def regenerate_options(
    client,
    question: str,
    current_options: Sequence[dict] = (),
    target_count: int = 4,
    context: str = "",
) -> list[FlowOption]:
    if not question or not question.strip():
        raise ScriptGenerationError("Question is required")

    parts = [f'Generate {target_count} response options for this medical IVR question:\n\nQuestion: "{question}"']
    if context:
        parts.append(f"Context: {context}")
    if current_options:
        parts.append(f"Current options for reference (regenerate with better triage): {list(current_options)}")

    try:
        content = await client.chat(
            [
                {"role": "system", "content": _options_instructions(target_count)},
                {"role": "user", "content": "\n\n".join(parts)},
            ],
            model=DEFAULT_OPTIONS_MODEL,
            temperature=0.4,
            max_tokens=1000,
        )
        parsed = extract_json(content)
    except UpstreamError as e:
        raise ScriptGenerationError(f"Failed to regenerate options: {e}") from e
    except ValueError as e:
        raise ScriptGenerationError("Failed to parse options as JSON") from e

    if isinstance(parsed, dict):
        parsed = parsed.get("options")
    if not isinstance(parsed, list):
        raise ScriptGenerationError("Response is not a list of options")
    try:
        return [FlowOption.from_dict(o) for o in parsed]
    except FlowMapError as e:
        raise ScriptGenerationError(f"Regenerated options are unusable: {e}") from e
