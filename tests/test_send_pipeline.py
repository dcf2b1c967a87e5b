"""Tests for the send pipeline: validation, retry policy, drafts and Sent."""
import logging

import pytest

from mail_core.core.send_pipeline import SendPipeline, validate_for_send
from mail_core.models import DRAFT, SEEN, Attachment, OutboundDraft
from mail_core.utils.errors import (
    AuthenticationError,
    DeliveryError,
    InvalidArgument,
    MailConnectionError,
)


# ── Helpers ──────────────────────────────────────────────────────────


def make_draft(**overrides):
    fields = dict(
        to=["bob@example.com"],
        cc=["carol@example.com"],
        bcc=["dave@example.com"],
        subject="Grüße from Alice",
        body_plain="Hello Bob",
    )
    fields.update(overrides)
    return OutboundDraft(**fields)


# ── Validation ───────────────────────────────────────────────────────


class TestValidation:
    @pytest.mark.parametrize("overrides", [
        {"to": []},
        {"to": ["not-an-address"]},
        {"cc": ["bob@@example.com"]},
        {"body_plain": "   ", "body_html": ""},
        {"attachments": [Attachment(attachment_id="a1", filename="x.pdf")]},
    ])
    def test_rejects_unsendable_drafts_without_io(self, pipeline, connector, relay, overrides):
        with pytest.raises(InvalidArgument):
            pipeline.send("alice", make_draft(**overrides))
        assert connector.calls == 0
        assert relay.attempts == 0

    def test_accepts_named_recipients(self):
        validate_for_send(make_draft(to=["Bob Example <bob@example.com>"]))

    def test_attachments_need_a_loader(self):
        draft = make_draft(attachments=[Attachment(attachment_id="a1", filename="x.pdf")])
        validate_for_send(draft, attachment_loader=lambda attachment: b"%PDF")

    def test_backoff_doubles(self, pipeline):
        assert [pipeline.backoff_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_rejects_zero_attempts(self, pool, synchronizer):
        with pytest.raises(ValueError):
            SendPipeline(pool, synchronizer, max_attempts=0)


# ── Sending ──────────────────────────────────────────────────────────


class TestSend:
    def test_relays_and_records_sent_copy(self, pipeline, relay, store):
        message_id = pipeline.send("alice", make_draft())

        envelope_from, recipients, relayed = relay.sent[0]
        assert envelope_from == "alice@example.com"
        assert recipients == ["bob@example.com", "carol@example.com", "dave@example.com"]
        assert relayed["Bcc"] is None
        assert relayed["Message-ID"] == message_id
        assert message_id.endswith("@example.com>")

        [sent_uid] = store.uids("Sent Items")
        assert store.flags_of("Sent Items", sent_uid) == {SEEN}
        assert b"dave@example.com" in store.mailboxes["Sent Items"].messages[sent_uid].raw

    def test_retries_transient_failures_with_backoff(self, pipeline, relay, sleeps):
        relay.fail_transiently(2)

        pipeline.send("alice", make_draft())

        assert relay.attempts == 3
        assert len(relay.sent) == 1
        assert sleeps == [1.0, 2.0]
        assert sum(sleeps) >= 3.0

    def test_exhausted_retries_keep_the_draft(self, pipeline, relay, store, sleeps):
        relay.fail_transiently(3)
        draft = make_draft()

        with pytest.raises(DeliveryError) as exc_info:
            pipeline.send("alice", draft)

        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, MailConnectionError)
        assert relay.attempts == 3
        assert sleeps == [1.0, 2.0]
        assert store.uids("Drafts") == [draft.draft_id]
        assert store.uids("Sent Items") == []

    def test_permanent_rejection_is_not_retried(self, pipeline, relay, store, sleeps):
        relay.reject()
        draft = make_draft()

        with pytest.raises(DeliveryError) as exc_info:
            pipeline.send("alice", draft)

        assert exc_info.value.retryable is False
        assert relay.attempts == 1
        assert sleeps == []
        assert store.uids("Drafts") == [draft.draft_id]

    def test_relay_auth_failure_becomes_delivery_error(self, pipeline, relay, connector, store):
        relay.script.append(AuthenticationError("535 credentials rejected"))
        draft = make_draft()

        with pytest.raises(DeliveryError):
            pipeline.send("alice", draft)

        assert relay.attempts == 1
        assert connector.calls == 2  # the rejected session is replaced to save the draft
        assert store.uids("Drafts") == [draft.draft_id]

    def test_partially_refused_message_is_recorded_as_sent(self, pipeline, relay, store, sleeps):
        relay.script.append(DeliveryError(
            "Failed to send to recipients: eve@example.com",
            refused={"eve@example.com": "550 No such user"},
            partial=True,
        ))
        draft = make_draft()
        pipeline.save_draft("alice", draft)

        with pytest.raises(DeliveryError) as exc_info:
            pipeline.send("alice", draft)

        assert exc_info.value.partial is True
        assert relay.attempts == 1
        assert sleeps == []
        assert len(store.uids("Sent Items")) == 1
        assert store.uids("Drafts") == []

    def test_sent_message_removes_its_saved_draft(self, pipeline, store):
        draft = make_draft()
        pipeline.save_draft("alice", draft)
        assert len(store.uids("Drafts")) == 1

        pipeline.send("alice", draft)

        assert store.uids("Drafts") == []
        assert len(store.uids("Sent Items")) == 1
        assert draft.draft_id is None

    def test_failure_to_record_sent_is_logged_not_raised(self, pipeline, relay, store, caplog):
        store.failures.append(MailConnectionError("reset during LIST"))

        with caplog.at_level(logging.ERROR, logger="mail_core.core.send_pipeline"):
            message_id = pipeline.send("alice", make_draft())

        assert len(relay.sent) == 1
        assert message_id in caplog.text
        assert "could not be recorded" in caplog.text

    def test_attachments_are_loaded_into_the_relayed_message(self, pool, synchronizer, relay):
        loaded = []

        def loader(attachment):
            loaded.append(attachment.attachment_id)
            return b"%PDF-1.4 fake"

        pipeline = SendPipeline(pool, synchronizer, sleep=lambda seconds: None, attachment_loader=loader)
        draft = make_draft(attachments=[Attachment(attachment_id="blob-1", filename="report.pdf",
                                                   mime_type="application/pdf", size_bytes=13)])

        pipeline.send("alice", draft)

        relayed = relay.sent[0][2]
        assert relayed.get_content_type() == "multipart/mixed"
        filenames = [part.get_filename() for part in relayed.walk() if part.get_filename()]
        assert filenames == ["report.pdf"]
        assert "blob-1" in loaded


# ── Drafts ───────────────────────────────────────────────────────────


class TestDrafts:
    def test_saved_draft_reads_back(self, pipeline, synchronizer, pool, store):
        draft = make_draft()

        draft_id = pipeline.save_draft("alice", draft)

        assert draft.draft_id == draft_id
        assert store.flags_of("Drafts", draft_id) == {DRAFT, SEEN}
        with pool.session("alice") as session:
            saved = synchronizer.get_message(session, "drafts", draft_id)
        assert saved.to == ["bob@example.com"]
        assert saved.cc == ["carol@example.com"]
        assert saved.bcc == ["dave@example.com"]
        assert saved.subject == "Grüße from Alice"
        assert saved.body_plain.strip() == "Hello Bob"
        assert saved.sender == "alice@example.com"

    def test_resaving_replaces_the_previous_copy(self, pipeline, store):
        draft = make_draft()
        first_id = pipeline.save_draft("alice", draft)
        draft.subject = "Revised"

        second_id = pipeline.save_draft("alice", draft)

        assert second_id != first_id
        assert store.uids("Drafts") == [second_id]

    def test_incomplete_drafts_can_be_saved(self, pipeline, store):
        draft = OutboundDraft(subject="just an idea")
        draft_id = pipeline.save_draft("alice", draft)
        assert store.uids("Drafts") == [draft_id]

    def test_attachment_references_survive_a_save(self, pipeline, synchronizer, pool):
        attachment = Attachment(attachment_id="blob-9", filename="notes.txt", mime_type="text/plain", size_bytes=42)
        draft_id = pipeline.save_draft("alice", make_draft(attachments=[attachment]))

        with pool.session("alice") as session:
            saved = synchronizer.get_message(session, "drafts", draft_id)
        assert saved.attachments == [attachment]
