"""Audit log writes, queries and retention."""

from datetime import timedelta
from unittest.mock import MagicMock

from paymatch_api.auth.audit_logging import (
    AuditLogEntry,
    cleanup_old_audit_logs,
    get_ip_audit_logs,
    get_user_audit_logs,
    log_audit_entry,
    log_auth_failure,
    log_login_attempt,
    log_rate_limit_hit,
)
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.tokens import utcnow
from paymatch_api.db.models import AuditLog

CLIENT = ClientInfo(ip_address="198.51.100.20", user_agent="pytest")


def test_login_attempt_records_client_and_status(db_session):
    log_login_attempt(db_session, "anna@example.ch", CLIENT, False, "Invalid credentials")

    row = db_session.query(AuditLog).one()
    assert row.action == "user_login"
    assert row.status == "failure"
    assert row.ip_address == "198.51.100.20"
    assert row.user_agent == "pytest"
    assert row.error_message == "Invalid credentials"


def test_sensitive_details_are_redacted(db_session):
    log_auth_failure(
        db_session, "password_change", "weak", CLIENT,
        details={"password": "Abcdef1!", "iban": "CH9300762011623852957", "step": 2},
    )

    details = db_session.query(AuditLog).one().details
    assert details["password"] == "[REDACTED]"
    assert details["iban"] == "[REDACTED]"
    assert details["step"] == 2


def test_rate_limit_hit_masks_email_identifier(db_session):
    log_rate_limit_hit(db_session, "anna@example.ch", "LOGIN_ATTEMPTS", CLIENT)

    row = db_session.query(AuditLog).one()
    assert row.action == "rate_limit_hit"
    assert row.details["identifier"] == "an***@example.ch"
    assert row.resource_id == "LOGIN_ATTEMPTS"


def test_write_failure_is_swallowed():
    db = MagicMock()
    db.commit.side_effect = RuntimeError("db down")

    log_audit_entry(db, AuditLogEntry(action="user_login", status="failure"))

    db.rollback.assert_called_once()


def test_queries_by_user_and_ip(db_session):
    log_login_attempt(db_session, "anna@example.ch", CLIENT, True, user_id="user-1")
    log_login_attempt(db_session, "anna@example.ch", CLIENT, True, user_id="user-1")
    log_login_attempt(db_session, "ben@example.ch", ClientInfo(ip_address="198.51.100.21"), True, user_id="user-2")

    assert len(get_user_audit_logs(db_session, "user-1")) == 2
    assert len(get_user_audit_logs(db_session, "user-1", limit=1)) == 1
    assert [r.user_id for r in get_ip_audit_logs(db_session, "198.51.100.21")] == ["user-2"]


def test_cleanup_removes_rows_older_than_retention(db_session):
    db_session.add(AuditLog(action="user_login", status="success", created_at=utcnow() - timedelta(days=91)))
    db_session.add(AuditLog(action="user_login", status="success", created_at=utcnow() - timedelta(days=10)))
    db_session.commit()

    assert cleanup_old_audit_logs(db_session, retention_days=90) == 1
    assert db_session.query(AuditLog).count() == 1
