"""
Compliance manager.

Screens outgoing transfers for AML, structuring, sanctions, round-amount and
KYC red flags, scores fraud risk, and manages the review workflow of the
alerts those checks raise.
"""

import ipaddress
import structlog
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID
from datetime import datetime, timedelta, timezone

from banking_api.src.config import get_settings
from banking_api.src.exceptions import ConflictError, NotFoundError
from banking_api.src.models.audit import AuditAction, AuditLogCreate, AuditSeverity, format_amount
from banking_api.src.models.auth import KycStatus
from banking_api.src.models.compliance import (
    ALERT_TRANSITIONS,
    AlertListResponse,
    AlertStatus,
    AlertType,
    ComplianceAlert,
    ComplianceCheckResult,
    FraudScore,
)
from banking_api.src.repositories.compliance_repo import ComplianceRepository
from banking_api.src.repositories.user_repo import UserRepository
from shared.tracing import trace_function

logger = structlog.get_logger(__name__)

PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
)

ROUND_AMOUNT_UNIT = Decimal("1000")
ROUND_AMOUNT_MIN_COUNT = 3
RULE_TRIGGER_SCORE = 50


def is_private_ip(ip_address: Optional[str]) -> bool:
    if not ip_address:
        return False
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return any(address in network for network in PRIVATE_NETWORKS)


def has_rapid_succession(timestamps: List[datetime], window: timedelta) -> bool:
    """True if any two consecutive timestamps (sorted ascending) are closer than ``window``."""
    return any(later - earlier < window for earlier, later in zip(timestamps, timestamps[1:]))


def velocity_score(recent_count: int, amount: Decimal, average_amount: Decimal) -> int:
    score = Decimal(recent_count * 10)
    if average_amount > 0:
        score += abs(amount - average_amount) / Decimal(100)
    return int(min(score, Decimal(100)))


def location_score(daily_count: int, ip_address: Optional[str]) -> int:
    score = 0
    if daily_count > 50:
        score += 40
    elif daily_count > 20:
        score += 20
    if is_private_ip(ip_address):
        score += 10
    return min(score, 100)


def device_score(failed_attempts: int, device_id: Optional[str]) -> int:
    score = 0
    if failed_attempts > 5:
        score += 30
    if device_id is not None and len(device_id) < 10:
        score += 20
    return min(score, 100)


def combine_fraud_components(components: Dict[str, int], block_threshold: int) -> FraudScore:
    """Sum component scores, cap at 100, and name the components above 50."""
    score = min(sum(components.values()), 100)
    rules = [name for name, value in components.items() if value > RULE_TRIGGER_SCORE]
    return FraudScore(
        score=score,
        rules=rules,
        allowed=score < block_threshold,
        components=components,
    )


class ComplianceManager:
    """Service for transaction screening and compliance alert review."""

    def __init__(
        self,
        compliance_repo: ComplianceRepository,
        user_repo: UserRepository,
        audit_logger=None,
        metrics=None
    ):
        self.compliance_repo = compliance_repo
        self.user_repo = user_repo
        self.audit_logger = audit_logger
        self.metrics = metrics
        self.settings = get_settings()

    @trace_function("compliance.check_transaction")
    async def check_transaction_compliance(
        self,
        user_id: Optional[UUID],
        account_id: UUID,
        amount: Decimal,
        currency: str,
        from_country: Optional[str] = None,
        to_country: Optional[str] = None,
        declared_countries: Sequence[str] = ()
    ) -> ComplianceCheckResult:
        """
        Screen an outgoing transfer.

        ``from_country`` and ``to_country`` are the account owners' countries.
        ``declared_countries`` come from the request and are screened as well,
        never instead.

        AML threshold, structuring and sanctions hits make the transfer
        non-compliant. Round-amount and KYC hits only flag it for review.
        Every hit is stored as a PENDING alert.
        """
        now = datetime.now(timezone.utc)
        day_ago = now - timedelta(hours=24)
        blocking: List[ComplianceAlert] = []
        review: List[ComplianceAlert] = []

        def alert(alert_type: AlertType, severity: AuditSeverity, description: str, **details) -> ComplianceAlert:
            return ComplianceAlert(
                alert_type=alert_type,
                severity=severity,
                user_id=user_id,
                account_id=account_id,
                amount=amount,
                currency=currency,
                description=description,
                details=details,
            )

        daily_total = await self.compliance_repo.sum_outgoing(account_id, currency, day_ago)
        if daily_total + amount > self.settings.aml_daily_threshold:
            blocking.append(alert(
                AlertType.AML_THRESHOLD,
                AuditSeverity.HIGH,
                f"Transaction exceeds AML daily threshold: {format_amount(amount, currency)}",
                daily_total=str(daily_total),
                threshold=str(self.settings.aml_daily_threshold),
            ))

        timestamps = await self.compliance_repo.outgoing_timestamps(account_id, day_ago)
        window = timedelta(minutes=self.settings.structuring_window_minutes)
        if has_rapid_succession(timestamps, window):
            blocking.append(alert(
                AlertType.STRUCTURING,
                AuditSeverity.MEDIUM,
                "Suspicious transaction pattern detected (possible structuring)",
                window_minutes=self.settings.structuring_window_minutes,
            ))

        sanctioned = set(self.settings.sanctioned_countries)
        involved = (from_country, to_country, *declared_countries)
        hit_countries = sorted({c.upper() for c in involved if c and c.upper() in sanctioned})
        if hit_countries:
            blocking.append(alert(
                AlertType.SANCTIONS,
                AuditSeverity.CRITICAL,
                "Potential sanctions violation - transaction involves sanctioned country",
                countries=hit_countries,
            ))

        threshold = self.settings.round_amount_threshold
        if amount % ROUND_AMOUNT_UNIT == 0 and amount >= threshold:
            large_count = await self.compliance_repo.count_outgoing(account_id, day_ago, min_amount=threshold)
            if large_count >= ROUND_AMOUNT_MIN_COUNT:
                review.append(alert(
                    AlertType.ROUND_AMOUNT,
                    AuditSeverity.MEDIUM,
                    "Multiple round-number transactions detected (possible structuring)",
                    recent_large_transfers=large_count,
                ))

        if user_id is not None and amount > self.settings.kyc_unverified_limit:
            user = await self.user_repo.get_user_by_id(user_id)
            if user is not None and user.kyc_status != KycStatus.VERIFIED.value:
                review.append(alert(
                    AlertType.KYC_REQUIRED,
                    AuditSeverity.MEDIUM,
                    f"Large transaction ({format_amount(amount, currency)}) from unverified user",
                    kyc_status=user.kyc_status,
                ))

        stored = [await self._store_alert(a) for a in blocking + review]
        result = ComplianceCheckResult(
            is_compliant=not blocking,
            requires_review=bool(review),
            alerts=stored,
        )

        if self.audit_logger is not None:
            await self.audit_logger.log(AuditLogCreate(
                action=AuditAction.AML_CHECK_PERFORMED,
                severity=AuditSeverity.MEDIUM if stored else AuditSeverity.LOW,
                user_id=user_id,
                account_id=account_id,
                resource_type="account",
                resource_id=str(account_id),
                description=f"Compliance check: {'passed' if result.is_compliant else 'failed'}",
                details={
                    "amount": str(amount),
                    "currency": currency,
                    "alerts": [a.alert_type.value for a in stored],
                    "requires_review": result.requires_review,
                },
            ))

        logger.info(
            "compliance_check_completed",
            account_id=str(account_id),
            compliant=result.is_compliant,
            requires_review=result.requires_review,
            alerts=[a.alert_type.value for a in stored],
        )
        return result

    @trace_function("compliance.fraud_score")
    async def calculate_fraud_score(
        self,
        user_id: Optional[UUID],
        account_id: UUID,
        amount: Decimal,
        ip_address: Optional[str] = None,
        device_id: Optional[str] = None,
        failed_attempts: int = 0
    ) -> FraudScore:
        """
        Score fraud risk from velocity, location and device signals.

        A blocked score raises a FRAUD_SCORE alert.
        """
        now = datetime.now(timezone.utc)
        hourly_count = await self.compliance_repo.count_outgoing(account_id, now - timedelta(hours=1))
        weekly_average = await self.compliance_repo.average_outgoing(account_id, now - timedelta(days=7))
        daily_count = await self.compliance_repo.count_outgoing(account_id, now - timedelta(hours=24))

        fraud = combine_fraud_components(
            {
                "HIGH_VELOCITY": velocity_score(hourly_count, amount, weekly_average),
                "HIGH_RISK_LOCATION": location_score(daily_count, ip_address),
                "SUSPICIOUS_DEVICE": device_score(failed_attempts, device_id),
            },
            self.settings.fraud_block_threshold,
        )

        if not fraud.allowed:
            await self._store_alert(ComplianceAlert(
                alert_type=AlertType.FRAUD_SCORE,
                severity=AuditSeverity.HIGH,
                user_id=user_id,
                account_id=account_id,
                amount=amount,
                description=f"Fraud score {fraud.score} at or above block threshold",
                details={"score": fraud.score, "rules": fraud.rules, "components": fraud.components},
            ))

        logger.info(
            "fraud_score_calculated",
            account_id=str(account_id),
            score=fraud.score,
            allowed=fraud.allowed,
            rules=fraud.rules,
        )
        return fraud

    async def _store_alert(self, alert: ComplianceAlert) -> ComplianceAlert:
        """Persist an alert; a failed insert is logged and the unsaved alert returned."""
        if self.metrics is not None:
            self.metrics.compliance_alerts.labels(
                alert_type=alert.alert_type.value,
                severity=alert.severity.value
            ).inc()
        try:
            return await self.compliance_repo.insert_alert(alert)
        except Exception as e:
            logger.error(
                "compliance_alert_store_failed",
                error=str(e),
                alert_type=alert.alert_type.value,
                account_id=str(alert.account_id) if alert.account_id else None,
            )
            return alert

    # ------------------------------------------------------------------
    # Alert review
    # ------------------------------------------------------------------

    async def list_alerts(
        self,
        status: Optional[AlertStatus] = None,
        severity: Optional[AuditSeverity] = None,
        limit: int = 50,
        offset: int = 0
    ) -> AlertListResponse:
        alerts, total = await self.compliance_repo.list_alerts(
            status=status.value if status else None,
            severity=severity.value if severity else None,
            limit=limit,
            offset=offset,
        )
        return AlertListResponse(alerts=alerts, total=total, limit=limit, offset=offset)

    async def review_alert(
        self,
        alert_id: UUID,
        new_status: AlertStatus,
        reviewer_id: UUID,
        notes: Optional[str] = None
    ) -> ComplianceAlert:
        """
        Move an alert through the review workflow.

        Raises:
            NotFoundError: If the alert does not exist
            ConflictError: If the transition is not allowed from the current status
        """
        current = await self.compliance_repo.get_alert(alert_id)
        if current is None:
            raise NotFoundError("Compliance alert not found")

        allowed, reason = check_transition(current.status, new_status)
        if not allowed:
            raise ConflictError(reason)

        updated = await self.compliance_repo.update_alert_review(
            alert_id, current.status, new_status, reviewer_id, notes
        )
        if updated is None:
            raise ConflictError("Compliance alert was modified concurrently")
        return updated


def check_transition(current: AlertStatus, new: AlertStatus) -> Tuple[bool, str]:
    if new in ALERT_TRANSITIONS.get(current, frozenset()):
        return True, ""
    return False, f"Cannot change alert from {current.value} to {new.value}"
