from typing import Any, List, Mapping, Optional, Sequence, Union
import json
import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from vision_agent.domain.models.vision_state import ExtractionDegraded, ExtractionOk
from vision_agent.domain.vision.extraction_parser import ExtractionParser
from vision_agent.domain.vision.field_catalog import LIST_FIELDS, catalog_field_names

logger = structlog.get_logger(__name__)

EXTRACTION_SYSTEM_PROMPT = """You are an information extraction system.
Extract structured company vision information from the user message and return ONLY valid JSON.

### Rules:
1. Map information to the standard schema when possible.
2. If a piece of information does not match any schema field but is still important,
   store it under metadata.custom_fields with a meaningful key.
3. Use confidence scores from 0.0 to 1.0 based on extraction certainty.
4. If confidence < 0.5, set value to null.
5. Do not invent facts. Only use data clearly stated or strongly implied.

### Standard Schema Fields:
{schema}

### Output JSON Structure:
Each field maps to {{"value": ..., "confidence": number, "source_span": string,
"extraction_method": "direct|inferred|contextual"}}. Custom fields go under
{{"metadata": {{"custom_fields": {{"<custom_key>": {{...same shape...}}}}}}}}.

### Confidence Guidelines:
- 0.9-1.0: Direct quotes ("We are Acme Corp")
- 0.7-0.9: Clear implication
- 0.5-0.7: Weak inference (value -> null if < 0.5)

### Extraction Methods:
- "direct": Explicitly stated in the message
- "inferred": Logically derived from stated information
- "contextual": Inferred from conversation history or existing vision"""


def schema_lines() -> str:
    lines = []
    for name in catalog_field_names():
        if name in LIST_FIELDS:
            kind = "string[]"
        elif name == "company_size":
            kind = "number"
        else:
            kind = "string"
        lines.append(f"- {name} ({kind})")
    return "\n".join(lines)


def summarize_vision(state: Optional[Mapping[str, Any]]) -> str:
    if not state:
        return "No existing vision data"

    parts = []
    if state.get("company_name"):
        parts.append(f"Company: {state['company_name']}")
    if state.get("industry"):
        parts.append(f"Industry: {state['industry']}")
    if isinstance(state.get("vision_statement"), str) and state["vision_statement"]:
        parts.append(f"Vision: {state['vision_statement'][:100]}")
    if isinstance(state.get("key_themes"), list) and state["key_themes"]:
        parts.append(f"Themes: {', '.join(str(t) for t in state['key_themes'][:3])}")

    return " | ".join(parts) if parts else "No existing vision data"


class InformationExtractor:
    """Runs the extraction model and validates its output"""

    def __init__(self, llm: BaseChatModel, parser: Optional[ExtractionParser] = None, context_window: int = 3):
        self.llm = llm
        self.parser = parser or ExtractionParser()
        self.context_window = context_window

    def build_messages(
        self,
        user_message: str,
        current_state: Optional[Mapping[str, Any]] = None,
        session_context: Sequence[str] = ()
    ) -> List[Union[SystemMessage, HumanMessage]]:
        recent = list(session_context)[-self.context_window:]
        recent_block = "Recent conversation:\n" + "\n".join(recent) + "\n\n" if recent else ""

        return [
            SystemMessage(content=EXTRACTION_SYSTEM_PROMPT.format(schema=schema_lines())),
            HumanMessage(content=(
                f"{recent_block}User message: {json.dumps(user_message)}\n\n"
                f"Current vision context: {summarize_vision(current_state)}"
            )),
        ]

    async def extract(
        self,
        user_message: str,
        current_state: Optional[Mapping[str, Any]] = None,
        session_context: Sequence[str] = ()
    ) -> Union[ExtractionOk, ExtractionDegraded]:
        """Extract scored fields from one user message"""

        messages = self.build_messages(user_message, current_state, session_context)

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            logger.error("Extraction model call failed", error=str(e))
            return ExtractionDegraded(reason="model_error", detail=str(e))

        outcome = self.parser.parse(_text_of(response.content))

        if isinstance(outcome, ExtractionOk):
            logger.info(
                "Extracted fields",
                fields=sorted(outcome.fields),
                custom_fields=sorted(outcome.custom_fields),
                total_confidence=outcome.total_confidence
            )
        return outcome


def _text_of(content: Union[str, List[Any]]) -> str:
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "".join(parts)
