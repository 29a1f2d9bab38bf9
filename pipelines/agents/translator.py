"""
pipelines/agents/translator.py

Stage 1: normalise the patient's symptom text to clinical English and flag
emergency keywords.  Patient history (if any) is passed in as context.
"""

from __future__ import annotations

import json
from typing import Optional

from pipelines.agents.base import StageAgent, StageOutcome, json_instruction
from pipelines.agents.keywords import detect_emergency_keywords, merge_keywords
from pipelines.extraction import parse_stage_payload
from pipelines.schemas import TranslationResult
from storage.models import Stage

SYSTEM_PROMPT = """You are an expert medical translator specialising in Indian languages and medical terminology.

- Translate symptom descriptions into precise clinical English, preserving medical meaning.
- Detect emergency indicators (chest pain, breathing difficulty, loss of consciousness, severe pain, high fever) in any language.
- Note cultural context: traditional medicine references, regional expressions, home remedies.
- Use the patient history only as context; do not invent symptoms."""

JSON_SCHEMA = {
    "translatedSymptoms": "precise medical English translation",
    "emergencyKeywords": ["detected emergency terms"],
    "culturalContext": "cultural and contextual notes",
}


def fallback_translation(symptoms: str, language: str, history: Optional[dict] = None) -> TranslationResult:
    translated = symptoms if language == "english" else f"Translated from {language}: {symptoms}"
    return TranslationResult(
        translated_symptoms=translated,
        emergency_keywords=detect_emergency_keywords(symptoms),
        cultural_context=cultural_context(language, history),
    )


def cultural_context(language: str, history: Optional[dict] = None) -> str:
    context = f"Patient communicated in {language}"
    conditions = (history or {}).get("conditions") or []
    if conditions:
        context += f". Previous conditions: {', '.join(conditions)}"
    if language != "english":
        context += (
            f". Cultural considerations for {language} speakers may include "
            "traditional medicine practices and regional health beliefs."
        )
    return context


class TranslatorAgent(StageAgent):
    stage = Stage.translator

    def run(self, symptoms: str, language: str, history: Optional[dict] = None) -> StageOutcome[TranslationResult]:
        history_text = (
            json.dumps(history, indent=2, ensure_ascii=False) if history else "No previous history available"
        )
        messages = [
            {"role": "system", "content": f"{SYSTEM_PROMPT}\n\nPATIENT HISTORY:\n{history_text}\n\n{json_instruction(JSON_SCHEMA)}"},
            {"role": "user", "content": f'Patient symptoms in {language}: "{symptoms}"'},
        ]

        def parse(text: str) -> TranslationResult:
            result = parse_stage_payload(text, TranslationResult)
            keywords = merge_keywords(result.emergency_keywords, detect_emergency_keywords(symptoms))
            return result.model_copy(update={"emergency_keywords": keywords})

        return self._attempt(messages, parse, lambda: fallback_translation(symptoms, language, history))
