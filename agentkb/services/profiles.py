# =============================================================================
# Agent Profiles — Optional Persona Per Agent
# =============================================================================
#
# A profile (name, role, tone, do_not_answer_from_general_knowledge) shapes
# the generation prompt. Agents without a profile still answer, with a
# generic persona.
# =============================================================================

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from agentkb.db.engine import async_session_factory
from agentkb.db.models import AgentProfile

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "role", "tone", "do_not_answer_from_general_knowledge")


class ProfileRepository(Protocol):
    async def get(self, agent_id: str) -> dict | None:
        ...

    async def upsert(self, agent_id: str, values: dict) -> dict:
        ...


class SqlProfileRepository:
    """Profiles in the `agent_profiles` table."""

    async def get(self, agent_id: str) -> dict | None:
        async with async_session_factory() as session:
            result = await session.execute(
                select(AgentProfile).where(AgentProfile.agent_id == agent_id)
            )
            profile = result.scalar_one_or_none()
            return _to_dict(profile) if profile is not None else None

    async def upsert(self, agent_id: str, values: dict) -> dict:
        row = {k: values.get(k) for k in PROFILE_FIELDS}
        row["do_not_answer_from_general_knowledge"] = bool(
            row["do_not_answer_from_general_knowledge"]
        )
        stmt = pg_insert(AgentProfile).values(agent_id=agent_id, **row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[AgentProfile.agent_id],
            set_=row,
        ).returning(AgentProfile)
        async with async_session_factory() as session:
            result = await session.execute(stmt)
            profile = result.scalar_one()
            await session.commit()
        logger.info("Saved profile for agent=%s", agent_id)
        return _to_dict(profile)


def _to_dict(profile: AgentProfile) -> dict:
    return {
        "agent_id": profile.agent_id,
        "name": profile.name,
        "role": profile.role,
        "tone": profile.tone,
        "do_not_answer_from_general_knowledge": profile.do_not_answer_from_general_knowledge,
    }
