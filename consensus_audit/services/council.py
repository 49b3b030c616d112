"""
Council Service - Council resolution, fan-out drafting and synthesis.

NO DICTIONARIES - Drafts and verdicts are DraftResult / VerdictResult.
Drafter failures are absorbed into placeholder drafts; an auditor failure
aborts the run before anything is charged.
"""

import asyncio
import time
from collections.abc import Mapping, Sequence

from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.exceptions import (
    CouncilConfigurationError,
    ProviderError,
    SynthesisFailedError,
)
from consensus_audit.models.api import CouncilSlotConfig, SlotRole
from consensus_audit.models.domain import (
    AssembledContext,
    ChatMessage,
    CouncilConfiguration,
    CouncilSlot,
    DraftResult,
    VerdictResult,
)
from consensus_audit.observability import metrics
from consensus_audit.services.context import context_messages, wrap_user_query
from consensus_audit.services.llm_provider import LLMProvider

logger = get_logger(__name__)

AUDITOR_NAME_HINTS = ("audit", "synth")

DRAFTER_SYSTEM_PROMPT = (
    "You are a member of an expert council. Answer the user's request thoroughly "
    "and accurately. Other experts answer independently; an auditor will review "
    "all answers."
)

AUDITOR_SYSTEM_PROMPT = (
    "You are the Auditor of an expert council. Compare the drafts below, identify "
    "factual errors, flag every point where the drafts conflict, and write one "
    "final, corrected verdict that answers the user's request."
)


def failure_placeholder(slot: CouncilSlot) -> str:
    """Draft text substituted for a drafter that failed."""
    return f"[{slot.display_name} failed to respond]"


# ============================================================================
# Council Resolution
# ============================================================================


def default_council() -> CouncilConfiguration:
    """Council built from the configured default models."""
    drafter_ids = settings.drafter_model_ids
    slots = [
        CouncilSlot(
            slot_key=f"agent_{chr(ord('a') + i)}",
            model_id=model_id,
            display_name=model_id.split("/")[-1],
            role=SlotRole.DRAFTER,
            position=i,
        )
        for i, model_id in enumerate(drafter_ids)
    ]
    slots.append(
        CouncilSlot(
            slot_key="auditor",
            model_id=settings.default_auditor_model,
            display_name=settings.default_auditor_model.split("/")[-1],
            role=SlotRole.AUDITOR,
            position=len(drafter_ids),
        )
    )
    return _build(slots)


def resolve_council(
    config: Mapping[str, CouncilSlotConfig] | None,
    turbo_mode: bool = False,
) -> CouncilConfiguration:
    """
    Resolve a request's slot map into a validated council.

    Slots with explicit roles must name exactly one auditor. Legacy maps
    without roles pick the first slot whose key or name mentions
    "audit"/"synth", else the last slot. Turbo mode keeps only the first
    drafters.

    Raises:
        CouncilConfigurationError: If the map cannot form a valid council
    """
    if not config:
        council = default_council()
    else:
        council = _from_slot_map(config)

    if turbo_mode:
        council = _limit_drafters(council, settings.turbo_max_drafters)
    return council


def _from_slot_map(config: Mapping[str, CouncilSlotConfig]) -> CouncilConfiguration:
    entries = list(config.items())
    if len(entries) < 2:
        raise CouncilConfigurationError(
            "Council needs at least one drafter and one auditor"
        )

    if any(slot.role is not None for _, slot in entries):
        auditor_index = _explicit_auditor_index(entries)
    else:
        auditor_index = _legacy_auditor_index(entries)

    slots = [
        CouncilSlot(
            slot_key=key,
            model_id=slot.model_id,
            display_name=slot.name,
            role=SlotRole.AUDITOR if i == auditor_index else SlotRole.DRAFTER,
            position=i,
        )
        for i, (key, slot) in enumerate(entries)
    ]
    return _build(slots)


def _explicit_auditor_index(entries: list[tuple[str, CouncilSlotConfig]]) -> int:
    auditors = [i for i, (_, slot) in enumerate(entries) if slot.role == SlotRole.AUDITOR]
    if len(auditors) != 1:
        raise CouncilConfigurationError(
            f"Council must have exactly one auditor slot, got {len(auditors)}"
        )
    return auditors[0]


def _legacy_auditor_index(entries: list[tuple[str, CouncilSlotConfig]]) -> int:
    for i, (key, slot) in enumerate(entries):
        haystack = f"{key} {slot.name}".lower()
        if any(hint in haystack for hint in AUDITOR_NAME_HINTS):
            return i
    return len(entries) - 1


def _limit_drafters(council: CouncilConfiguration, max_drafters: int) -> CouncilConfiguration:
    kept = set(council.drafters[:max_drafters])
    return _build([s for s in council.slots if s.role == SlotRole.AUDITOR or s in kept])


def _build(slots: Sequence[CouncilSlot]) -> CouncilConfiguration:
    try:
        return CouncilConfiguration(slots=tuple(slots))
    except ValueError as exc:
        raise CouncilConfigurationError(str(exc)) from exc


# ============================================================================
# Fan-Out Drafting
# ============================================================================


def drafter_messages(prompt: str, context: AssembledContext) -> list[ChatMessage]:
    """Messages sent to every drafter."""
    return [
        ChatMessage(role="system", content=DRAFTER_SYSTEM_PROMPT),
        *context_messages(context),
        ChatMessage(role="user", content=wrap_user_query(prompt)),
    ]


class DraftingExecutor:
    """Invokes every drafter concurrently and waits for all of them."""

    def __init__(self, provider: LLMProvider) -> None:
        self.provider = provider

    async def run(
        self,
        council: CouncilConfiguration,
        prompt: str,
        context: AssembledContext,
    ) -> tuple[DraftResult, ...]:
        """
        Run all drafters.

        Returns drafts in council order; never raises for a drafter failure.
        """
        messages = drafter_messages(prompt, context)
        input_chars = sum(len(m.content) for m in messages)

        drafts = await asyncio.gather(
            *(self._draft(slot, messages, input_chars) for slot in council.drafters)
        )

        failed = sum(1 for d in drafts if d.failed)
        logger.info("drafting_complete", drafters=len(drafts), failed=failed)
        return tuple(drafts)

    async def _draft(
        self,
        slot: CouncilSlot,
        messages: list[ChatMessage],
        input_chars: int,
    ) -> DraftResult:
        start = time.perf_counter()
        try:
            reply = await self.provider.invoke(slot.model_id, messages)
        except Exception as exc:
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.warning(
                "drafter_failed",
                slot_key=slot.slot_key,
                model_id=slot.model_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            metrics.record_model_invocation(SlotRole.DRAFTER.value, False, latency_ms)
            return DraftResult(
                slot=slot,
                response=failure_placeholder(slot),
                latency_ms=latency_ms,
                input_chars=input_chars,
                failed=True,
                error=str(exc),
            )

        latency_ms = int((time.perf_counter() - start) * 1000)
        metrics.record_model_invocation(SlotRole.DRAFTER.value, True, latency_ms)
        return DraftResult(
            slot=slot,
            response=reply.text,
            latency_ms=latency_ms,
            input_chars=input_chars,
        )


# ============================================================================
# Synthesis
# ============================================================================


def auditor_messages(
    prompt: str,
    drafts: Sequence[DraftResult],
    context: AssembledContext,
) -> list[ChatMessage]:
    """Messages sent to the auditor: the query plus every draft, labelled."""
    draft_sections = "\n\n".join(
        f"--- Draft from {d.slot.display_name} ({d.slot.slot_key}) ---\n{d.response}"
        for d in drafts
    )
    return [
        ChatMessage(role="system", content=AUDITOR_SYSTEM_PROMPT),
        *context_messages(context),
        ChatMessage(
            role="user",
            content=f"{wrap_user_query(prompt)}\n\n{draft_sections}",
        ),
    ]


class SynthesisStep:
    """Produces the single verdict from the drafts."""

    def __init__(self, provider: LLMProvider) -> None:
        self.provider = provider

    async def run(
        self,
        council: CouncilConfiguration,
        prompt: str,
        drafts: Sequence[DraftResult],
        context: AssembledContext,
    ) -> VerdictResult:
        """
        Invoke the auditor.

        Raises:
            SynthesisFailedError: If the auditor invocation fails
        """
        auditor = council.auditor
        messages = auditor_messages(prompt, drafts, context)
        input_chars = sum(len(m.content) for m in messages)

        start = time.perf_counter()
        try:
            reply = await self.provider.invoke(auditor.model_id, messages)
        except Exception as exc:
            latency_ms = int((time.perf_counter() - start) * 1000)
            message = exc.message if isinstance(exc, ProviderError) else str(exc)
            metrics.record_model_invocation(SlotRole.AUDITOR.value, False, latency_ms)
            logger.error(
                "synthesis_failed",
                model_id=auditor.model_id,
                error=message,
                error_type=type(exc).__name__,
            )
            raise SynthesisFailedError(auditor.model_id, message) from exc

        latency_ms = int((time.perf_counter() - start) * 1000)
        metrics.record_model_invocation(SlotRole.AUDITOR.value, True, latency_ms)
        logger.info("synthesis_complete", model_id=auditor.model_id, latency_ms=latency_ms)

        return VerdictResult(
            slot=auditor,
            verdict=reply.text,
            latency_ms=latency_ms,
            input_chars=input_chars,
        )
