"""Unit tests for audit redaction, diffing, suspicious-activity flags and recording."""

import pytest

from hubauth.service.audit import (
    REDACTED,
    AuditAction,
    AuditEvent,
    AuditRecorder,
    AuditResource,
    create_diff,
    detect_suspicious,
    redact,
)


class TestRedact:
    def test_sensitive_keys_masked_at_any_depth(self):
        data = {
            "email": "a@example.com",
            "password": "hunter2",
            "password_hash": "$argon2id$...",
            "nested": {"refresh_token": "abc", "mfa_secret": "JBSW", "ok": 1},
            "items": [{"apiKey": "k"}, {"backup-codes": ["X"]}],
        }
        out = redact(data)
        assert out["email"] == "a@example.com"
        assert out["password"] == REDACTED
        assert out["password_hash"] == REDACTED
        assert out["nested"] == {"refresh_token": REDACTED, "mfa_secret": REDACTED, "ok": 1}
        assert out["items"] == [{"apiKey": REDACTED}, {"backup-codes": REDACTED}]
        # input untouched
        assert data["password"] == "hunter2"


def test_create_diff_reports_only_changes():
    before = {"name": "a", "locked": False, "email": "x@example.com"}
    after = {"name": "b", "locked": False, "email": "x@example.com", "tenant_id": "t"}
    assert create_diff(before, after) == {
        "name": {"before": "a", "after": "b"},
        "tenant_id": {"before": None, "after": "t"},
    }


class TestSuspicious:
    def test_bulk_delete_over_threshold(self):
        assert detect_suspicious(AuditAction.DELETE, {"count": 11})
        assert not detect_suspicious(AuditAction.DELETE, {"count": 10})

    def test_high_value_approval(self):
        assert detect_suspicious(AuditAction.APPROVE, {"voucher_value": 1500})
        assert detect_suspicious(AuditAction.APPROVE, {"value": 1000.01})
        assert not detect_suspicious(AuditAction.APPROVE, {"value": 999})

    def test_super_admin_password_reset(self):
        assert detect_suspicious(AuditAction.RESET_PASSWORD, {"target_is_super_admin": True})
        assert not detect_suspicious(AuditAction.RESET_PASSWORD, {"target_is_super_admin": False})

    def test_every_suspension(self):
        assert detect_suspicious(AuditAction.SUSPEND, None)

    def test_ordinary_events(self):
        assert not detect_suspicious(AuditAction.LOGIN, {})
        assert not detect_suspicious(AuditAction.DELETE, {"count": True})


class TestRecorder:
    def test_record_persists_redacted_entry(self, audit, store):
        entry = audit.record(
            AuditEvent(
                actor_id="admin-1",
                tenant_id="tenant-a",
                action=AuditAction.RESET_PASSWORD,
                resource=AuditResource.USER,
                resource_id="user-9",
                before={"password_hash": "old"},
                metadata={"target_is_super_admin": True},
                ip_address="10.0.0.1",
            )
        )
        assert entry is not None
        assert entry.action == "RESET_PASSWORD"
        assert entry.resource == "user"
        assert entry.changes_before == {"password_hash": REDACTED}
        assert entry.is_suspicious
        assert entry.ip_address == "10.0.0.1"
        assert entry.user_agent == "unknown"
        assert store.list_audit_logs() == [entry]

    def test_thresholds_come_from_settings(self, store, settings):
        strict = AuditRecorder(store, settings.model_copy(update={"audit_bulk_delete_threshold": 2}))
        entry = strict.record(
            AuditEvent(
                actor_id="a",
                tenant_id=None,
                action=AuditAction.DELETE,
                resource=AuditResource.USER,
                metadata={"count": 3},
            )
        )
        assert entry.is_suspicious

    def test_store_failure_is_swallowed(self, settings):
        class BrokenStore:
            def append_audit_log(self, entry):
                raise RuntimeError("disk full")

        recorder = AuditRecorder(BrokenStore(), settings)
        result = recorder.record(
            AuditEvent(
                actor_id="a",
                tenant_id=None,
                action=AuditAction.LOGIN,
                resource=AuditResource.SESSION,
            )
        )
        assert result is None

    @pytest.mark.parametrize("tenant_id,expected", [(None, 2), ("tenant-a", 1)])
    def test_list_filters_by_tenant_newest_first(self, audit, store, tenant_id, expected):
        for tid in ("tenant-a", "tenant-b"):
            audit.record(
                AuditEvent(
                    actor_id="a",
                    tenant_id=tid,
                    action=AuditAction.LOGIN,
                    resource=AuditResource.SESSION,
                )
            )
        logs = store.list_audit_logs(tenant_id=tenant_id)
        assert len(logs) == expected
        if tenant_id is None:
            assert logs[0].tenant_id == "tenant-b"
