"""Prompt assembly for the conversation pipeline.

The LLM input is always: one system message (persona, critical rules,
knowledge directory and content, memory of previous sessions) followed by the
recent session history in chronological order.
"""

from typing import Optional
from uuid import UUID

from omnichat.logging_config import get_logger

logger = get_logger("context_builder")

DEFAULT_PERSONA = "Eres un asistente amable."
DEFAULT_GROUNDING_RULES = (
    "- Solo responde basándote en la información oficial de la empresa.\n"
    "- Si el usuario pregunta por un producto o precio no mencionado, responde que no tienes esa información.\n"
    '- NUNCA inventes productos e ingredientes. Es mejor decir "no lo sé".'
)

RULES_HEADER = "=== REGLAS CRÍTICAS ==="
SOURCES_HEADER = "=== FUENTES DE INFORMACIÓN DISPONIBLES ==="
SOURCES_INTRO = (
    "Tienes acceso a los siguientes documentos para tu conocimiento "
    "(los nombres de archivos indican su contenido):"
)
TRAINING_HEADER = "=== ENTRENAMIENTO EXCLUSIVO DE LA EMPRESA ==="
TRAINING_INTRO = "Usa ESTA información para responder preguntas sobre precios, platos, servicios y disponibilidad:"
MEMORY_HEADER = "=== MEMORIA DE CONVERSACIONES ANTERIORES ==="

KNOWLEDGE_ASSET_LIMIT = 15
SUMMARY_LIMIT = 3
HISTORY_LIMIT = 20


def resolve_persona(channel: str, settings_map: dict[str, str]) -> str:
    return settings_map.get(f"SYSTEM_PROMPT_{channel.upper()}") or settings_map.get("SYSTEM_PROMPT") or DEFAULT_PERSONA


def build_system_prompt(channel: str, settings_map: dict[str, str], assets: list, summaries: list) -> str:
    prompt = resolve_persona(channel, settings_map)
    rules = settings_map.get("GROUNDING_RULES") or DEFAULT_GROUNDING_RULES
    prompt += f"\n\n{RULES_HEADER}\n{rules}"

    if assets:
        directory = "\n".join(f"- {a.name} ({a.filename})" for a in assets)
        prompt += f"\n\n{SOURCES_HEADER}\n{SOURCES_INTRO}\n{directory}"

        content = "\n\n".join(
            f"--- CONTENIDO DE: {a.name} ---\n{a.extracted_text}" for a in assets if a.extracted_text
        )
        if content:
            prompt += f"\n\n{TRAINING_HEADER}\n{TRAINING_INTRO}\n{content}"

    if summaries:
        memory = "\n".join(f"- {s.summary_text}" for s in summaries)
        prompt += f"\n\n{MEMORY_HEADER}\n{memory}"

    return prompt


class ContextBuilder:
    def __init__(self, store):
        self.store = store

    async def build_messages(
        self,
        tenant_id: Optional[UUID],
        channel: str,
        contact_id: UUID,
        session_id: UUID,
        settings_map: dict[str, str],
    ) -> list[dict]:
        assets = await self.store.knowledge_assets(tenant_id, KNOWLEDGE_ASSET_LIMIT)
        summaries = await self.store.recent_summaries(tenant_id, contact_id, SUMMARY_LIMIT)
        history = await self.store.recent_messages(session_id, HISTORY_LIMIT)

        system_prompt = build_system_prompt(channel, settings_map, assets, summaries)
        logger.debug(
            "Context built",
            extra={
                "context": {
                    "channel": channel,
                    "assets": len(assets),
                    "summaries": len(summaries),
                    "history": len(history),
                }
            },
        )

        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m.role, "content": m.content} for m in history)
        return messages
