"""Unit tests for the billing job handler registry."""

import pytest

from billing_engine.modules.billing.jobs import JOB_HANDLERS, job_handler
from billing_engine.modules.billing.models import BillingJobType


class TestJobHandlers:
    def test_every_job_type_has_a_handler(self):
        """Verify the queue can run every job type it accepts."""
        assert set(JOB_HANDLERS) == set(BillingJobType)

    def test_payment_jobs_share_a_handler(self):
        assert (
            JOB_HANDLERS[BillingJobType.PROCESS_PAYMENT]
            is JOB_HANDLERS[BillingJobType.RETRY_PAYMENT]
        )

    def test_duplicate_registration_rejected(self):
        """Verify a second handler for the same job type is refused."""
        with pytest.raises(ValueError, match="already registered"):

            @job_handler(BillingJobType.RENEW_SUBSCRIPTION)
            async def another_renewal(billing, job):
                return {}
