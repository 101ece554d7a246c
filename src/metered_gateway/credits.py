"""Pre-flight credit gate.

Policy: fail OPEN on transient billing failures (network, timeout, 5xx,
malformed body) and fail CLOSED on identity failures (401/403/404). A
metering outage must not block the product; a deleted account must.
"""

from __future__ import annotations

import logging

import httpx

from metered_gateway.billing import BillingClient, UsageSummary
from metered_gateway.types import CreditStatus, UserContext

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED_MESSAGE = "Not authenticated. Please log in to use AI features."
EXPIRED_MESSAGE = (
    "Your subscription has expired. "
    "Please renew your subscription to continue using AI features."
)
EXHAUSTED_MESSAGE = (
    "You've used all your credits for this month. "
    "Please upgrade your plan or purchase add-ons to continue."
)
ACCOUNT_INACTIVE_MESSAGE = (
    "Your account is not active or was deleted. "
    "Please sign in again or upgrade to a paid plan to use AI features."
)

# credits_left sentinel: balance unknown, request allowed unmetered
UNKNOWN_CREDITS = -1

_IDENTITY_STATUSES = frozenset({401, 403, 404})


def credits_left(summary: UsageSummary) -> int:
    """Remaining credits for a usage summary.

    With a monthly limit: ``max(0, limit + add_ons - used)``. Without one,
    the backend's own remaining count.
    """
    if summary.max_analyses_per_month is not None:
        add_ons = summary.extra_analyses_available or 0
        used = summary.current_month_analyses or 0
        return max(0, summary.max_analyses_per_month + add_ons - used)
    return summary.remaining_analyses or 0


class CreditGate:
    """Decides allow/deny for a request. Never raises; never caches."""

    def __init__(self, billing: BillingClient | None, low_credit_threshold: int = 5) -> None:
        self._billing = billing
        self._low_credit_threshold = low_credit_threshold

    async def check(self, context: UserContext) -> CreditStatus:
        """Check the tenant's remaining balance against the billing backend."""
        tenant_id = context.tenant_id
        if not tenant_id:
            return CreditStatus(
                has_credits=False, credits_left=0, message=NOT_AUTHENTICATED_MESSAGE
            )
        if self._billing is None:
            logger.debug("No billing backend configured; request unmetered")
            return CreditStatus(has_credits=True, credits_left=UNKNOWN_CREDITS)

        try:
            summary = await self._billing.usage_summary(tenant_id)
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            if status_code in _IDENTITY_STATUSES:
                logger.warning(
                    "Credit check rejected identity",
                    extra={"tenant_id": tenant_id, "status_code": status_code},
                )
                return CreditStatus(
                    has_credits=False, credits_left=0, message=ACCOUNT_INACTIVE_MESSAGE
                )
            return self._fail_open(tenant_id, exc)
        except (httpx.HTTPError, ValueError) as exc:
            # ValueError covers undecodable JSON and pydantic ValidationError
            return self._fail_open(tenant_id, exc)

        remaining = credits_left(summary)
        if remaining <= 0:
            message = (
                EXPIRED_MESSAGE if summary.subscription_status == "expired" else EXHAUSTED_MESSAGE
            )
            return CreditStatus(has_credits=False, credits_left=0, message=message)

        status = CreditStatus(
            has_credits=True,
            credits_left=remaining,
            low_credit_threshold=self._low_credit_threshold,
        )
        if status.is_low:
            logger.warning(
                "Low credits: %d remaining",
                remaining,
                extra={"tenant_id": tenant_id, "credits_left": remaining},
            )
        return status

    @staticmethod
    def _fail_open(tenant_id: str, exc: Exception) -> CreditStatus:
        logger.error(
            "Credit check failed, allowing request unmetered: %s",
            exc,
            extra={"tenant_id": tenant_id, "error_type": type(exc).__name__},
        )
        return CreditStatus(has_credits=True, credits_left=UNKNOWN_CREDITS)
