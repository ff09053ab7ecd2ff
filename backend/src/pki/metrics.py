"""OpenTelemetry metrics for the certificate lifecycle."""

from collections.abc import Iterator

from opentelemetry import metrics

meter = metrics.get_meter("mtls_identity")

# ============================================================================
# Certificate Authority
# ============================================================================

certificates_issued_total = meter.create_counter(
    name="mtls_certificates_issued_total",
    description="Total certificates signed by the CA",
    unit="1",
)

certificate_issuance_duration = meter.create_histogram(
    name="mtls_certificate_issuance_duration_seconds",
    description="Time spent validating and signing a CSR",
    unit="s",
)

issuance_rejections_total = meter.create_counter(
    name="mtls_issuance_rejections_total",
    description="CSRs rejected by the CA",
    unit="1",
)

enrollment_requests_total = meter.create_counter(
    name="mtls_enrollment_requests_total",
    description="Enrollment requests received by the server",
    unit="1",
)

bundle_downloads_total = meter.create_counter(
    name="mtls_bundle_downloads_total",
    description="Certificate bundle download attempts",
    unit="1",
)

# CA loaded gauge - track storage type
_ca_storage_type: str | None = None


def _get_ca_loaded(
    options: metrics.CallbackOptions,
) -> Iterator[metrics.Observation]:
    """Callback to report CA loaded status."""
    if _ca_storage_type:
        yield metrics.Observation(1, {"storage_type": _ca_storage_type})
    else:
        yield metrics.Observation(0, {"storage_type": "none"})


ca_loaded_gauge = meter.create_observable_gauge(
    name="mtls_ca_loaded",
    description="CA key and certificate loaded (1=yes, 0=no)",
    unit="1",
    callbacks=[_get_ca_loaded],
)

# ============================================================================
# Trust decisions
# ============================================================================

trust_decisions_total = meter.create_counter(
    name="mtls_trust_decisions_total",
    description="Peer chain evaluations against the pinned CA",
    unit="1",
)

# ============================================================================
# Device side
# ============================================================================

device_enrollments_total = meter.create_counter(
    name="mtls_device_enrollments_total",
    description="Device enrollment attempts by outcome",
    unit="1",
)

rotation_evaluations_total = meter.create_counter(
    name="mtls_rotation_evaluations_total",
    description="Rotation policy evaluations",
    unit="1",
)

_days_until_expiry: int | None = None


def _get_days_until_expiry(
    options: metrics.CallbackOptions,
) -> Iterator[metrics.Observation]:
    if _days_until_expiry is not None:
        yield metrics.Observation(_days_until_expiry, {})


days_until_expiry_gauge = meter.create_observable_gauge(
    name="mtls_identity_days_until_expiry",
    description="Days until the current identity expires",
    unit="d",
    callbacks=[_get_days_until_expiry],
)


class PkiMetrics:
    """Facade for certificate lifecycle metrics with proper labels."""

    def record_ca_loaded(self, storage_type: str) -> None:
        """Record CA loaded with storage type. Labels: storage_type=file|generated|memory"""
        global _ca_storage_type
        _ca_storage_type = storage_type

    def record_certificate_issued(self, role: str, duration_seconds: float) -> None:
        """Record a signed certificate. Labels: role=server|client"""
        certificates_issued_total.add(1, {"role": role})
        certificate_issuance_duration.record(duration_seconds, {"role": role})

    def record_issuance_rejected(self, reason: str) -> None:
        issuance_rejections_total.add(1, {"reason": reason})

    def record_enrollment_request(self, outcome: str) -> None:
        """Labels: outcome=issued|rejected|error"""
        enrollment_requests_total.add(1, {"outcome": outcome})

    def record_bundle_download(self, result: str) -> None:
        """Labels: result=served|not_found"""
        bundle_downloads_total.add(1, {"result": result})

    def record_trust_decision(self, result: str, method: str) -> None:
        """Labels: result=accepted|rejected, method=pin|chain|ca_mismatch|..."""
        trust_decisions_total.add(1, {"result": result, "method": method})

    def record_device_enrollment(self, outcome: str) -> None:
        """Labels: outcome=completed|failed"""
        device_enrollments_total.add(1, {"outcome": outcome})

    def record_rotation_evaluation(
        self, verdict: str, degraded: bool, days_until_expiry: int
    ) -> None:
        """Labels: verdict=required|recommended|ok, degraded=true|false"""
        global _days_until_expiry
        _days_until_expiry = days_until_expiry
        rotation_evaluations_total.add(
            1, {"verdict": verdict, "degraded": str(degraded).lower()}
        )


# Singleton instance
pki_metrics = PkiMetrics()
