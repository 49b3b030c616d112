"""
Pricing Service - Price table lookup and pre-execution cost estimation.

NO DICTIONARIES - Estimates flow through CostEstimate / SlotCost dataclasses.
Costs are computed from fixed per-role token assumptions, never from observed
usage, so the amount reserved is the amount debited.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

import httpx
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.db.models import ModelPrice
from consensus_audit.exceptions import InsufficientCreditsError, NoCreditsError
from consensus_audit.models.api import SlotRole
from consensus_audit.models.domain import (
    CostEstimate,
    CouncilConfiguration,
    LedgerSnapshot,
    ModelPriceData,
    SlotCost,
)

logger = get_logger(__name__)

# Token assumptions per invocation
DRAFTER_INPUT_TOKENS = 1000
DRAFTER_OUTPUT_TOKENS = 1000
AUDITOR_INPUT_TOKENS = 3000
AUDITOR_OUTPUT_TOKENS = 1500


def role_cost(price: ModelPriceData, role: SlotRole) -> Decimal:
    """Estimated cost of one invocation of a model in the given role."""
    if role == SlotRole.AUDITOR:
        return (
            price.input_price * AUDITOR_INPUT_TOKENS
            + price.output_price * AUDITOR_OUTPUT_TOKENS
        )
    return price.input_price * DRAFTER_INPUT_TOKENS + price.output_price * DRAFTER_OUTPUT_TOKENS


class PriceTable:
    """Keyed model price lookup with configured fallbacks for unknown models."""

    def __init__(
        self,
        prices: dict[str, ModelPriceData],
        default_input_price: Decimal,
        default_output_price: Decimal,
    ) -> None:
        self._prices = prices
        self.default_input_price = default_input_price
        self.default_output_price = default_output_price

    @classmethod
    async def load(cls, session: AsyncSession, model_ids: list[str]) -> "PriceTable":
        """
        Load prices for the given models in one query.

        Args:
            session: Database session
            model_ids: Models of the council being estimated

        Returns:
            Price table scoped to those models
        """
        stmt = select(ModelPrice).where(ModelPrice.model_id.in_(model_ids))
        result = await session.execute(stmt)

        prices = {
            row.model_id: ModelPriceData(
                model_id=row.model_id,
                input_price=Decimal(row.input_price),
                output_price=Decimal(row.output_price),
                last_updated=row.last_updated,
            )
            for row in result.scalars().all()
        }

        missing = [m for m in model_ids if m not in prices]
        if missing:
            logger.warning("model_prices_missing_using_defaults", model_ids=missing)

        return cls(prices, settings.default_input_price, settings.default_output_price)

    def price_for(self, model_id: str) -> ModelPriceData:
        """Get the price of a model, falling back to the defaults."""
        price = self._prices.get(model_id)
        if price is not None:
            return price
        return ModelPriceData(
            model_id=model_id,
            input_price=self.default_input_price,
            output_price=self.default_output_price,
        )

    def __len__(self) -> int:
        return len(self._prices)


class CostEstimator:
    """Estimates council cost and checks it against the ledger balance."""

    def __init__(self, price_table: PriceTable) -> None:
        self.price_table = price_table

    def estimate(self, council: CouncilConfiguration) -> CostEstimate:
        """
        Estimate the cost of running a council once.

        Every slot is priced, including drafters that may later fail:
        the estimate is what gets charged.
        """
        slot_costs = tuple(
            SlotCost(slot=slot, cost=role_cost(self.price_table.price_for(slot.model_id), slot.role))
            for slot in council.slots
        )
        total = sum((sc.cost for sc in slot_costs), Decimal("0"))
        return CostEstimate(slot_costs=slot_costs, total=total)

    def check_affordable(self, estimate: CostEstimate, ledger: LedgerSnapshot) -> None:
        """
        Reservation check; never deducts.

        Raises:
            NoCreditsError: Balance is zero or below
            InsufficientCreditsError: Balance is below the estimate
        """
        if ledger.balance <= 0:
            raise NoCreditsError(ledger.balance)
        if ledger.balance < estimate.total:
            raise InsufficientCreditsError(ledger.balance, estimate.total)


# ============================================================================
# Price Table Refresh
# ============================================================================


@dataclass(frozen=True)
class PriceSyncResult:
    """Outcome of one price catalogue sync."""

    fetched: int
    upserted: int
    skipped: int
    synced_at: datetime


class PriceSyncService:
    """
    Refreshes model_prices from the gateway's model catalogue.

    Runs out-of-band (CLI / cron); the request path only reads the table.
    """

    def __init__(
        self,
        session: AsyncSession,
        catalogue_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.session = session
        self.catalogue_url = catalogue_url or f"{settings.llm_base_url.rstrip('/')}/models"
        self._client = client

    async def sync(self) -> PriceSyncResult:
        """
        Fetch the catalogue and upsert every priced model.

        Raises:
            httpx.HTTPError: If the catalogue cannot be fetched
            ValueError: If the catalogue is empty
        """
        models = await self._fetch_catalogue()
        if not models:
            raise ValueError("Model catalogue returned no models")

        now = datetime.now(UTC)
        rows = []
        skipped = 0
        for model in models:
            row = _catalogue_row(model, now)
            if row is None:
                skipped += 1
                continue
            rows.append(row)

        if rows:
            stmt = insert(ModelPrice).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=[ModelPrice.model_id],
                set_={
                    "name": stmt.excluded.name,
                    "provider": stmt.excluded.provider,
                    "input_price": stmt.excluded.input_price,
                    "output_price": stmt.excluded.output_price,
                    "last_updated": stmt.excluded.last_updated,
                },
            )
            await self.session.execute(stmt)
            await self.session.commit()

        logger.info(
            "model_prices_synced",
            fetched=len(models),
            upserted=len(rows),
            skipped=skipped,
        )
        return PriceSyncResult(
            fetched=len(models), upserted=len(rows), skipped=skipped, synced_at=now
        )

    async def _fetch_catalogue(self) -> list[dict]:
        headers = {"Authorization": f"Bearer {settings.llm_api_key}"} if settings.llm_api_key else {}
        if self._client is not None:
            response = await self._client.get(self.catalogue_url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(self.catalogue_url, headers=headers)
        response.raise_for_status()
        data = response.json().get("data") or []
        return [m for m in data if isinstance(m, dict)]


def _catalogue_row(model: dict, now: datetime) -> dict | None:
    """Convert one catalogue entry to a model_prices row; None when unusable."""
    model_id = model.get("id")
    if not model_id:
        return None
    pricing = model.get("pricing") or {}
    try:
        input_price = Decimal(str(pricing.get("prompt", "0")))
        output_price = Decimal(str(pricing.get("completion", "0")))
    except InvalidOperation:
        return None
    # Negative sentinels mark variable-priced routers
    if input_price < 0 or output_price < 0:
        return None
    return {
        "model_id": model_id,
        "name": model.get("name") or model_id,
        "provider": "openrouter",
        "input_price": input_price,
        "output_price": output_price,
        "last_updated": now,
    }
