"""
Metrics Collection with Prometheus.

Exposes authentication, session and account lifecycle metrics.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    RESULT = "result"
    METHOD = "method"
    REASON = "reason"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class IdentityMetrics:
    """
    Centralized metrics for the identity service.

    Minimum viable metrics covering:
    - Logins (password, OIDC) by result
    - Refresh rotations by result, reuse detections
    - Session revocations by reason
    - Serializable transaction retries and exhausted retries
    - Admin invariant blocks, deletion finalizer outcomes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "identity_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Authentication Metrics
        # ====================================================================
        self.logins_total = Counter(
            "identity_logins_total",
            "Login attempts by method and result",
            [MetricLabels.METHOD, MetricLabels.RESULT],
        )

        self.password_verify_duration_seconds = Histogram(
            "identity_password_verify_duration_seconds",
            "Password hash verification duration in seconds",
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Session Metrics
        # ====================================================================
        self.refreshes_total = Counter(
            "identity_refreshes_total",
            "Refresh token exchanges by result",
            [MetricLabels.RESULT],
        )

        self.refresh_token_reuse_total = Counter(
            "identity_refresh_token_reuse_total",
            "Refresh token reuse detections (session revoked)",
        )

        self.sessions_revoked_total = Counter(
            "identity_sessions_revoked_total",
            "Sessions revoked by reason",
            [MetricLabels.REASON],
        )

        # ====================================================================
        # Transaction Metrics
        # ====================================================================
        self.transaction_retries_total = Counter(
            "identity_transaction_retries_total",
            "Serializable transaction retries after a conflict",
            [MetricLabels.OPERATION],
        )

        self.transaction_retries_exhausted_total = Counter(
            "identity_transaction_retries_exhausted_total",
            "Serializable transactions that conflicted on every attempt",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Account Lifecycle Metrics
        # ====================================================================
        self.admin_invariant_blocks_total = Counter(
            "identity_admin_invariant_blocks_total",
            "Mutations blocked because they would remove the last active admin",
            [MetricLabels.OPERATION],
        )

        self.account_deletion_finalize_total = Counter(
            "identity_account_deletion_finalize_total",
            "Account deletion finalizer outcomes",
            [MetricLabels.OUTCOME, MetricLabels.REASON],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "identity_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_login(self, method: str, result: str) -> None:
        """Record a login attempt."""
        self.logins_total.labels(method=method, result=result).inc()

    def record_refresh(self, result: str) -> None:
        """Record a refresh attempt."""
        self.refreshes_total.labels(result=result).inc()
        if result == "reused":
            self.refresh_token_reuse_total.inc()

    def record_session_revoked(self, reason: str) -> None:
        """Record a session revocation."""
        self.sessions_revoked_total.labels(reason=reason).inc()

    def record_transaction_retry(self, operation: str) -> None:
        """Record a conflict retry."""
        self.transaction_retries_total.labels(operation=operation).inc()

    def record_transaction_exhausted(self, operation: str) -> None:
        """Record a transaction that ran out of retries."""
        self.transaction_retries_exhausted_total.labels(operation=operation).inc()

    def record_admin_invariant_block(self, operation: str) -> None:
        """Record a last-admin block."""
        self.admin_invariant_blocks_total.labels(operation=operation).inc()

    def record_deletion_finalize(self, outcome: str, reason: str | None = None) -> None:
        """Record a finalizer outcome."""
        self.account_deletion_finalize_total.labels(
            outcome=outcome, reason=reason or "none"
        ).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = IdentityMetrics()
