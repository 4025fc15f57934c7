"""
Tests for sequential signer orchestration.
"""
import asyncio

import pytest

from app.exceptions import ConflictError, MissingFieldsError, UpstreamError, ValidationException
from app.models import DocumentStatus, SignerStatus
from app.services.orchestrator import PARTIAL_MESSAGE, SigningOrchestrator, pending_in_order


@pytest.fixture
def orchestrator(settings, fake_supabase, audit_log, finalization_pipeline, mock_webhooks, mock_email, locks):
    return SigningOrchestrator(
        settings=settings,
        supabase=fake_supabase,
        audit=audit_log,
        finalization=finalization_pipeline,
        webhooks=mock_webhooks,
        email=mock_email,
        locks=locks,
    )


META = {"ip": "203.0.113.7", "user_agent": "pytest"}


class TestPendingInOrder:
    def test_sorted_by_order_index(self, fake_supabase, multi_signer_document):
        signers = list(fake_supabase.signers.values())[::-1]

        assert [s.role for s in pending_in_order(signers)] == ["tenant", "landlord"]

    def test_completed_excluded(self, fake_supabase, multi_signer_document):
        signers = [
            s.model_copy(update={"status": SignerStatus.COMPLETED}) if s.role == "tenant" else s
            for s in fake_supabase.signers.values()
        ]

        assert [s.role for s in pending_in_order(signers)] == ["landlord"]


class TestSingleSigner:
    @pytest.mark.asyncio
    async def test_completes_and_finalizes(self, orchestrator, fake_supabase, one_off_document, fill_fields):
        await fill_fields(one_off_document)

        response = await orchestrator.complete(one_off_document, None, True, META)

        assert response.status == DocumentStatus.COMPLETED
        assert len(response.sha256) == 64
        stored = fake_supabase.documents["doc-1"]
        assert stored.status == DocumentStatus.COMPLETED
        assert stored.signed_pdf_sha256 == response.sha256
        events = fake_supabase.events_of("doc-1")
        assert events[:2] == ["consent_given", "completed"]
        assert "completion_email_sent" in events

    @pytest.mark.asyncio
    async def test_missing_fields(self, orchestrator, fake_supabase, one_off_document):
        with pytest.raises(MissingFieldsError) as exc_info:
            await orchestrator.complete(one_off_document, None, True, META)

        assert exc_info.value.missing == ["sig_main", "name_main"]
        assert fake_supabase.documents["doc-1"].status == DocumentStatus.SENT
        assert fake_supabase.events_of("doc-1") == []

    @pytest.mark.asyncio
    async def test_consent_required(self, orchestrator, one_off_document, fill_fields):
        await fill_fields(one_off_document)

        with pytest.raises(ValidationException):
            await orchestrator.complete(one_off_document, None, False, META)

    @pytest.mark.asyncio
    async def test_concurrent_completion_finalizes_once(
        self, orchestrator, fake_supabase, one_off_document, fill_fields
    ):
        await fill_fields(one_off_document)

        results = await asyncio.gather(
            orchestrator.complete(one_off_document, None, True, META),
            orchestrator.complete(one_off_document, None, True, META),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, ConflictError)) == 1
        assert fake_supabase.events_of("doc-1").count("completed") == 1


class TestMultiSigner:
    @pytest.mark.asyncio
    async def test_first_signer_leaves_document_partial(
        self, orchestrator, fake_supabase, multi_signer_document, fill_fields, mock_email
    ):
        await fill_fields(multi_signer_document, "tenant")
        tenant = fake_supabase.signers["signer-tenant"]

        response = await orchestrator.complete(multi_signer_document, tenant, True, META)

        assert response.status == DocumentStatus.PARTIAL
        assert response.message == PARTIAL_MESSAGE
        assert response.pending_signers == ["landlord@example.com"]
        assert fake_supabase.documents["doc-2"].status == DocumentStatus.PARTIAL
        assert fake_supabase.signers["signer-tenant"].status == SignerStatus.COMPLETED
        assert fake_supabase.signers["signer-tenant"].signed_at is not None

    @pytest.mark.asyncio
    async def test_next_signer_is_notified(
        self, orchestrator, fake_supabase, multi_signer_document, fill_fields, mock_email
    ):
        await fill_fields(multi_signer_document, "tenant")

        await orchestrator.complete(multi_signer_document, fake_supabase.signers["signer-tenant"], True, META)

        mock_email.send_signing_request.assert_awaited_once()
        kwargs = mock_email.send_signing_request.await_args.kwargs
        assert kwargs["to_email"] == "landlord@example.com"
        assert kwargs["signing_url"] == "https://sign.example.com/d/doc-2?token=landlord-token"
        assert fake_supabase.events_of("doc-2") == ["consent_given", "signer_completed", "next_signer_notified"]

    @pytest.mark.asyncio
    async def test_failed_notification_not_audited(
        self, orchestrator, fake_supabase, multi_signer_document, fill_fields, mock_email
    ):
        mock_email.send_signing_request.return_value = type("Sent", (), {"success": False, "error": "down"})()
        await fill_fields(multi_signer_document, "tenant")

        response = await orchestrator.complete(
            multi_signer_document, fake_supabase.signers["signer-tenant"], True, META
        )

        assert response.status == DocumentStatus.PARTIAL
        assert "next_signer_notified" not in fake_supabase.events_of("doc-2")

    @pytest.mark.asyncio
    async def test_signer_cannot_complete_twice(self, orchestrator, fake_supabase, multi_signer_document, fill_fields):
        await fill_fields(multi_signer_document, "tenant")
        tenant = fake_supabase.signers["signer-tenant"]
        await orchestrator.complete(multi_signer_document, tenant, True, META)

        with pytest.raises(ConflictError):
            await orchestrator.complete(multi_signer_document, tenant, True, META)

    @pytest.mark.asyncio
    async def test_other_roles_fields_do_not_count(self, orchestrator, fake_supabase, multi_signer_document, fill_fields):
        await fill_fields(multi_signer_document, "tenant")

        with pytest.raises(MissingFieldsError) as exc_info:
            await orchestrator.complete(
                multi_signer_document, fake_supabase.signers["signer-landlord"], True, META
            )

        assert exc_info.value.missing == ["sig_landlord", "name_landlord"]

    @pytest.mark.asyncio
    async def test_last_signer_finalizes(
        self, orchestrator, fake_supabase, multi_signer_document, fill_fields, mock_email, mock_webhooks
    ):
        await fill_fields(multi_signer_document, "tenant")
        await orchestrator.complete(multi_signer_document, fake_supabase.signers["signer-tenant"], True, META)
        await fill_fields(multi_signer_document, "landlord")

        response = await orchestrator.complete(
            multi_signer_document, fake_supabase.signers["signer-landlord"], True, META
        )

        assert response.status == DocumentStatus.COMPLETED
        assert fake_supabase.documents["doc-2"].status == DocumentStatus.COMPLETED
        mock_webhooks.send_completed.assert_awaited_once()
        recipients = [c.args[0] for c in mock_email.send_completion.await_args_list]
        assert recipients == ["tenant@example.com", "landlord@example.com"]
        mock_email.send_owner_completion.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_finalization_can_be_retried(
        self, orchestrator, fake_supabase, internal_storage, multi_signer_document, fill_fields
    ):
        await fill_fields(multi_signer_document, "tenant")
        await orchestrator.complete(multi_signer_document, fake_supabase.signers["signer-tenant"], True, META)
        await fill_fields(multi_signer_document, "landlord")
        landlord = fake_supabase.signers["signer-landlord"]

        internal_storage.fail_uploads = True
        with pytest.raises(UpstreamError):
            await orchestrator.complete(multi_signer_document, landlord, True, META)
        assert fake_supabase.documents["doc-2"].status == DocumentStatus.PARTIAL
        assert fake_supabase.signers["signer-landlord"].status == SignerStatus.COMPLETED

        internal_storage.fail_uploads = False
        response = await orchestrator.complete(multi_signer_document, landlord, True, META)

        assert response.status == DocumentStatus.COMPLETED
        assert fake_supabase.documents["doc-2"].status == DocumentStatus.COMPLETED
        assert fake_supabase.events_of("doc-2").count("signer_completed") == 2

    @pytest.mark.asyncio
    async def test_retry_still_requires_consent(
        self, orchestrator, fake_supabase, internal_storage, multi_signer_document, fill_fields
    ):
        await fill_fields(multi_signer_document, "tenant")
        await orchestrator.complete(multi_signer_document, fake_supabase.signers["signer-tenant"], True, META)
        await fill_fields(multi_signer_document, "landlord")
        landlord = fake_supabase.signers["signer-landlord"]
        internal_storage.fail_uploads = True
        with pytest.raises(UpstreamError):
            await orchestrator.complete(multi_signer_document, landlord, True, META)
        internal_storage.fail_uploads = False

        with pytest.raises(ValidationException):
            await orchestrator.complete(multi_signer_document, landlord, False, META)

    @pytest.mark.asyncio
    async def test_completed_document_is_not_finalized_again(
        self, orchestrator, fake_supabase, multi_signer_document, fill_fields
    ):
        await fill_fields(multi_signer_document, "tenant")
        await orchestrator.complete(multi_signer_document, fake_supabase.signers["signer-tenant"], True, META)
        await fill_fields(multi_signer_document, "landlord")
        landlord = fake_supabase.signers["signer-landlord"]
        await orchestrator.complete(multi_signer_document, landlord, True, META)

        with pytest.raises(ConflictError):
            await orchestrator.complete(multi_signer_document, landlord, True, META)
