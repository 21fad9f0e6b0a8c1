from functools import lru_cache
import logging

from medilink.core.config import get_settings
from medilink.core.errors import ConfigurationError, MediLinkError
from medilink.models.chat import (
    ConversationPhase,
    MedicalChatRequest,
    MedicalChatResponse,
    MedicalRecords,
)
from medilink.services.llm_client import LLMClient


BASE_PROMPT = """
You are MediAssist, an advanced medical AI assistant integrated into MediLink.
Your role is to help patients understand their symptoms through intelligent questioning and analysis.

CRITICAL RULES:
1. ALWAYS review the patient's medical history before responding
2. NEVER give direct diagnoses - suggest potential causes and recommend seeing a doctor
3. Use interactive questioning to gather complete information
4. Ask follow-up questions one at a time with severity scales (0-5)
5. Consider past conditions, allergies, and medications in your analysis
6. Be empathetic and reassuring while being thorough
""".strip()

PHASE_PROMPTS = {
    ConversationPhase.initial: """
CURRENT PHASE: Initial Assessment
- Review the patient's question
- Check their medical history for relevant conditions
- Ask ONE specific follow-up question with a severity scale
- Format: "On a scale of 0-5, where 0 is none and 5 is severe, how would you rate [specific symptom]?"
""".strip(),
    ConversationPhase.questioning: """
CURRENT PHASE: Detailed Questioning
- Continue gathering information with ONE question at a time
- Use severity scales for intensity/frequency questions
- After 3-5 questions, move to analysis phase
""".strip(),
    ConversationPhase.analysis: """
CURRENT PHASE: Analysis & Recommendations
- Synthesize all gathered information
- Consider medical history in your assessment
- Provide personalized insights
- Give clear recommendations
- Suggest when to see a doctor
- Format response with:
  * Summary of symptoms
  * Possible causes (based on symptoms + history)
  * Recommendations
  * When to seek immediate care
""".strip(),
}

NONE_REPORTED = "None reported"

logger = logging.getLogger(__name__)


def render_medical_records(records: MedicalRecords) -> str:
    return "\n".join(
        [
            "PATIENT MEDICAL RECORDS:",
            f"- Chronic Diseases: {', '.join(records.chronic_diseases) or NONE_REPORTED}",
            f"- Allergies: {', '.join(records.allergies) or NONE_REPORTED}",
            f"- Past Medications: {', '.join(records.past_medications) or NONE_REPORTED}",
            f"- Previous Scans: {len(records.scans)} scans on file",
        ]
    )


def build_system_prompt(phase: ConversationPhase, medical_records: MedicalRecords | None) -> str:
    sections = [BASE_PROMPT]
    if medical_records is not None:
        sections.append(render_medical_records(medical_records))
    sections.append(PHASE_PROMPTS[phase])
    return "\n\n".join(sections)


class MedicalChatService:
    """Stateless: every call carries the whole conversation it needs."""

    def __init__(self, client: LLMClient | None = None) -> None:
        settings = get_settings()
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens
        self._client = client or LLMClient(
            provider=settings.llm_provider,
            api_key=settings.active_api_key,
            model=settings.active_model,
            base_url=settings.llm_base_url,
            app_name=settings.llm_app_name,
            site_url=settings.llm_site_url,
            timeout=settings.llm_timeout_seconds,
        )

    def build_messages(self, payload: MedicalChatRequest) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": build_system_prompt(payload.phase, payload.medical_records)}]
        messages.extend(
            {"role": turn.role.value, "content": turn.content}
            for turn in payload.conversation_history
        )
        messages.append({"role": "user", "content": payload.message})
        return messages

    def analyze(self, payload: MedicalChatRequest) -> MedicalChatResponse:
        if not self._client.enabled:
            logger.error("LLM provider %s has no API key configured", self._client.provider)
            raise ConfigurationError(f"{self._client.provider} API key is not configured")

        messages = self.build_messages(payload)
        logger.info(
            "Calling %s (%s) for session %s in phase %s",
            self._client.provider,
            self._client.model,
            payload.session_id,
            payload.phase.value,
        )

        try:
            reply = self._client.complete(
                messages,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except MediLinkError as exc:
            logger.warning("Medical chat request failed (%s): %s", self._client.provider, exc)
            raise

        return MedicalChatResponse(
            reply=reply,
            session_id=payload.session_id,
            phase=payload.phase,
            expects_severity_rating=payload.phase != ConversationPhase.analysis,
        )


@lru_cache
def get_medical_chat_service() -> MedicalChatService:
    return MedicalChatService()
