import re
from dataclasses import dataclass

from loguru import logger

from checkin_config import CheckinSettings
from checkin_errors import ErrorKind, classify_error
from checkin_log import CheckinLog
from commerce_client import CommerceClient
from membership_cache import MembershipCache


ORDER_ID_PATTERN = re.compile(r"[A-Z0-9]{10,}", re.IGNORECASE)

REASON_REQUIRED = "Order ID is required"
REASON_CONFIG = "Check-in configuration error"
REASON_NOT_FOUND = "Order not found"
REASON_MISSING_ITEM = "Order does not contain required check-in item"
REASON_NO_CUSTOMER = "Order does not have associated customer"
REASON_NETWORK = "Network error - please try again"
REASON_GENERIC = "An issue with check-in, please see the manager on duty"


@dataclass
class VerificationResult:
    valid: bool
    reason: str | None = None
    order: dict | None = None
    customer_id: str | None = None
    has_membership: bool | None = None
    from_history: bool = False
    retryable: bool = False

    def to_dict(self) -> dict:
        data = {"valid": self.valid}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.retryable:
            data["retryable"] = True
        if self.valid:
            data.update({
                "order": self.order,
                "customer_id": self.customer_id,
                "has_membership": self.has_membership,
                "from_history": self.from_history,
            })
        return data


class CheckinVerification:
    """Decides whether a scanned pass token may be used to check in."""

    def __init__(
        self,
        commerce: CommerceClient,
        cache: MembershipCache,
        settings: CheckinSettings,
        checkin_log: CheckinLog | None = None,
    ):
        self.commerce = commerce
        self.cache = cache
        self.checkin_log = checkin_log
        self.item_id = settings.checkin_catalog_item_id
        self.variant_id = settings.checkin_variant_id
        self.history_days = settings.history_lookback_days

    async def verify_checkin_order(self, pass_token: str | None, check_membership: bool = True) -> VerificationResult:
        order_id = (pass_token or "").strip()
        if not order_id:
            return VerificationResult(valid=False, reason=REASON_REQUIRED)

        if not self.item_id:
            logger.error("Check-in catalog item ID not configured")
            return VerificationResult(valid=False, reason=REASON_CONFIG)

        previous = self._history_hit(order_id)
        if previous is not None:
            result = VerificationResult(valid=True, customer_id=previous.customer_id, from_history=True)
        else:
            try:
                verification = await self.commerce.verify_checkin_order(order_id, self.item_id, self.variant_id)
            except Exception as exc:
                logger.error("Error verifying check-in order", order_id=order_id, error=str(exc))
                kind = classify_error(exc)
                # Only an unreachable commerce system may be retried later
                return VerificationResult(
                    valid=False, reason=self._reason_for(kind), retryable=kind is ErrorKind.NETWORK
                )

            if not verification.valid:
                return VerificationResult(valid=False, reason=verification.reason or REASON_MISSING_ITEM)

            order = verification.order or {}
            result = VerificationResult(valid=True, order=order, customer_id=order.get("customer_id") or None)

        if result.customer_id is None:
            if check_membership:
                return VerificationResult(valid=False, reason=REASON_NO_CUSTOMER)
            return result

        if check_membership:
            try:
                status = await self.cache.get_membership_status(result.customer_id)
                result.has_membership = status.has_membership
            except Exception as exc:
                # Order validity decides the check-in; membership is informational
                logger.error("Error checking membership", customer_id=result.customer_id, error=str(exc))
        return result

    def _history_hit(self, order_id: str):
        if self.checkin_log is None:
            return None
        try:
            return self.checkin_log.find_by_order(order_id, within_days=self.history_days)
        except Exception as exc:
            logger.warning("Check-in history lookup failed", order_id=order_id, error=str(exc))
            return None

    @staticmethod
    def _reason_for(kind: ErrorKind) -> str:
        if kind is ErrorKind.NOT_FOUND:
            return REASON_NOT_FOUND
        if kind is ErrorKind.NETWORK:
            return REASON_NETWORK
        return REASON_GENERIC

    @staticmethod
    def is_valid_order_id_format(value) -> bool:
        if not value or not isinstance(value, str):
            return False
        return bool(ORDER_ID_PATTERN.fullmatch(value.strip()))

    @staticmethod
    def detect_input_type(value) -> str:
        if CheckinVerification.is_valid_order_id_format(value):
            return "qr"
        return "search"
