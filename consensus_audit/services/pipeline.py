"""
Consensus Audit Pipeline - Request-scoped orchestration of one audit.

Eligibility Gate -> Cost Estimator -> Context Assembler -> Fan-Out Drafting
-> Synthesis -> Ledger & Usage Update -> Telemetry & Thresholds -> response,
while background tasks continue after the response.

Nothing is charged, counted or logged as analytics unless synthesis succeeds.
"""

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.exceptions import AuditError
from consensus_audit.models.api import AuditRequest, BackgroundTaskKind
from consensus_audit.models.domain import (
    AuditResult,
    CouncilConfiguration,
    DraftResult,
    EligibilityResult,
    VerdictResult,
)
from consensus_audit.observability import current_request_id, log_context, metrics, trace_operation
from consensus_audit.services.context import ContextAssembler
from consensus_audit.services.council import DraftingExecutor, SynthesisStep, resolve_council
from consensus_audit.services.dispatcher import BackgroundDispatcher
from consensus_audit.services.eligibility import EligibilityGate
from consensus_audit.services.ledger import LedgerService
from consensus_audit.services.llm_provider import LLMProvider
from consensus_audit.services.moderation import ModerationProvider
from consensus_audit.services.pricing import CostEstimator, PriceTable
from consensus_audit.services.telemetry import TelemetryMonitor, estimate_tokens

logger = get_logger(__name__)

UNLIMITED_AUDITS = -1
TRAINING_DRAFT_SLOTS = 2


def council_snapshot(council: CouncilConfiguration) -> dict[str, Any]:
    """JSON form of a council, keyed by slot like the request's slot map."""
    return {
        slot.slot_key: {"id": slot.model_id, "name": slot.display_name, "role": slot.role.value}
        for slot in council.slots
    }


def total_tokens(drafts: tuple[DraftResult, ...], verdict: VerdictResult) -> int:
    """Estimated tokens consumed across every invocation of a run."""
    chars = sum(d.input_chars + (0 if d.failed else len(d.response)) for d in drafts)
    chars += verdict.input_chars + len(verdict.verdict)
    return estimate_tokens(chars)


class ConsensusAuditPipeline:
    """Runs one consensus audit end to end."""

    def __init__(
        self,
        session: AsyncSession,
        llm: LLMProvider,
        moderation: ModerationProvider,
        dispatcher: BackgroundDispatcher | None = None,
    ) -> None:
        self.session = session
        self.llm = llm
        self.moderation = moderation
        self.dispatcher = dispatcher

    async def run(self, credential: str | None, request: AuditRequest) -> AuditResult:
        """
        Run an audit.

        Args:
            credential: Raw bearer token from the Authorization header
            request: Validated audit request

        Returns:
            Drafts, verdict and accounting for the run

        Raises:
            AuditError: Any rejection or fatal failure; nothing is charged
                unless the run completed synthesis
        """
        user_id: UUID | None = None
        with log_context(request_id=current_request_id() or str(uuid4())):
            try:
                with trace_operation("eligibility_gate"):
                    eligibility = await EligibilityGate(self.session, self.moderation).check(
                        credential, request.prompt
                    )
                user_id = eligibility.user.user_id

                with log_context(user_id=str(eligibility.user.user_id)):
                    result = await self._execute(eligibility, request)
            except AuditError as exc:
                metrics.record_audit(exc.error_kind)
                logger.info("audit_rejected", error_kind=exc.error_kind, details=exc.details)
                rejected_user = user_id or exc.user_id
                if rejected_user is not None:
                    await TelemetryMonitor(self.session).record_rejection(rejected_user, exc)
                raise

        metrics.record_audit("completed", float(result.estimated_cost))
        return result

    async def _execute(self, eligibility: EligibilityResult, request: AuditRequest) -> AuditResult:
        user = eligibility.user
        council = resolve_council(request.council_config, request.turbo_mode)

        with trace_operation("cost_estimate", model_count=len(council.slots)):
            price_table = await PriceTable.load(self.session, council.model_ids)
            estimator = CostEstimator(price_table)
            estimate = estimator.estimate(council)
            estimator.check_affordable(estimate, eligibility.ledger)

        logger.info(
            "audit_started",
            models=council.model_ids,
            estimated_cost=str(estimate.total),
            turbo_mode=request.turbo_mode,
        )

        with trace_operation("context_assembly"):
            context = await ContextAssembler(self.session, self.llm).assemble(
                user.user_id,
                request.prompt,
                file_url=request.file_url,
                conversation_id=request.conversation_id,
            )

        with trace_operation("fan_out_drafting", drafter_count=len(council.drafters)):
            drafts = await DraftingExecutor(self.llm).run(council, request.prompt, context)

        with trace_operation("synthesis", model_id=council.auditor.model_id):
            verdict = await SynthesisStep(self.llm).run(council, request.prompt, drafts, context)

        with trace_operation("ledger_update"):
            debit = await LedgerService(self.session, self.dispatcher).record_successful_audit(
                user,
                estimate.total,
                description=f"Consensus audit ({len(council.slots)} models)",
                metadata={
                    "models": council.model_ids,
                    "conversation_id": (
                        str(request.conversation_id) if request.conversation_id else None
                    ),
                },
            )

        with trace_operation("telemetry"):
            await TelemetryMonitor(self.session, self.dispatcher).record_run(
                user,
                eligibility.usage,
                council,
                estimate,
                drafts,
                verdict,
                conversation_id=request.conversation_id,
            )

        training_dataset_id = await self._dispatch_followups(
            eligibility, request, council, drafts, verdict
        )

        if eligibility.usage.monthly_limit is None:
            remaining = UNLIMITED_AUDITS
        else:
            remaining = max(eligibility.usage.monthly_limit - debit.audits_this_month, 0)

        logger.info(
            "audit_completed",
            estimated_cost=str(estimate.total),
            balance_after=str(debit.new_balance),
            failed_drafters=sum(1 for d in drafts if d.failed),
        )

        return AuditResult(
            drafts=drafts,
            verdict=verdict,
            librarian_analysis=context.librarian_analysis,
            remaining_audits=remaining,
            training_dataset_id=training_dataset_id,
            total_tokens=total_tokens(drafts, verdict),
            estimated_cost=estimate.total,
            model_count=len(council.slots),
        )

    async def _dispatch_followups(
        self,
        eligibility: EligibilityResult,
        request: AuditRequest,
        council: CouncilConfiguration,
        drafts: tuple[DraftResult, ...],
        verdict: VerdictResult,
    ) -> UUID | None:
        """Queue verdict email and training capture; returns the training record ID."""
        if self.dispatcher is None:
            return None

        user = eligibility.user
        if request.notify_by_email and user.email:
            await self.dispatcher.dispatch(
                BackgroundTaskKind.VERDICT_EMAIL,
                {
                    "user_id": str(user.user_id),
                    "email": user.email,
                    "prompt": request.prompt,
                    "verdict": verdict.verdict,
                },
            )

        if not settings.training_capture_enabled:
            return None

        record_id = uuid4()
        task_id = await self.dispatcher.dispatch(
            BackgroundTaskKind.TRAINING_CAPTURE,
            {
                "record_id": str(record_id),
                "user_id": str(user.user_id),
                "prompt": request.prompt,
                "drafts": [
                    {"model": d.slot.model_id, "response": None if d.failed else d.response}
                    for d in drafts[:TRAINING_DRAFT_SLOTS]
                ],
                "verdict_model": verdict.slot.model_id,
                "verdict": verdict.verdict,
                "council_config": council_snapshot(council),
                "council_source": request.council_source,
            },
        )
        return record_id if task_id is not None else None
