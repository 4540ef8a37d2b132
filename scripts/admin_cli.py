#!/usr/bin/env python3
"""Admin maintenance CLI for accounts, roles, SLA thresholds and API tokens."""

from __future__ import annotations

import argparse
import secrets

from werkzeug.security import generate_password_hash

from app import app, db_connect, init_db, issue_api_token, new_id, now_iso

ROLES = ('admin', 'broker')
SLA_CHANNELS = ('email', 'sms', 'whatsapp', 'call')


def reset_admin(email: str, password: str | None):
    """Reset the password of an admin account, creating it when missing."""
    email = email.lower()
    password = password or secrets.token_urlsafe(12)
    conn = db_connect(); cur = conn.cursor()
    cur.execute("SELECT id FROM users WHERE email = ?", (email,))
    row = cur.fetchone()
    if row:
        user_id = row['id']
        cur.execute("UPDATE users SET password_hash = ? WHERE id = ?", (generate_password_hash(password), user_id))
        print(f"password_reset user_id={user_id}")
    else:
        user_id = new_id()
        cur.execute(
            "INSERT INTO users (id, email, password_hash, full_name, created_at) VALUES (?, ?, ?, ?, ?)",
            (user_id, email, generate_password_hash(password), 'Administrator', now_iso()),
        )
        print(f"user_created user_id={user_id}")
    cur.execute(
        "INSERT OR IGNORE INTO user_roles (id, user_id, role, created_at) VALUES (?, ?, 'admin', ?)",
        (new_id(), user_id, now_iso()),
    )
    conn.commit(); conn.close()
    print(f"temporary_password={password}")


def grant_role(email: str, role: str):
    conn = db_connect(); cur = conn.cursor()
    cur.execute("SELECT id FROM users WHERE email = ?", (email.lower(),))
    row = cur.fetchone()
    if not row:
        conn.close()
        print("user_not_found")
        return
    cur.execute(
        "INSERT OR IGNORE INTO user_roles (id, user_id, role, created_at) VALUES (?, ?, ?, ?)",
        (new_id(), row['id'], role, now_iso()),
    )
    conn.commit(); changed = cur.rowcount; conn.close()
    print(f"granted={changed}")


def set_sla_threshold(channel: str, warning: int, critical: int, enabled: bool):
    if warning >= critical:
        raise SystemExit("warning threshold must be lower than the critical threshold")
    conn = db_connect(); cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO sla_thresholds (id, channel, warning_seconds, critical_seconds, enabled, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(channel) DO UPDATE SET
            warning_seconds = excluded.warning_seconds,
            critical_seconds = excluded.critical_seconds,
            enabled = excluded.enabled,
            updated_at = excluded.updated_at
        """,
        (new_id(), channel, warning, critical, int(enabled), now_iso()),
    )
    conn.commit(); conn.close()
    print(f"sla_threshold channel={channel} warning={warning} critical={critical} enabled={enabled}")


def issue_token(email: str, ttl_hours: int | None):
    conn = db_connect(); cur = conn.cursor()
    cur.execute("SELECT id FROM users WHERE email = ?", (email.lower(),))
    row = cur.fetchone()
    if not row:
        conn.close()
        print("user_not_found")
        return
    token, expires_at = issue_api_token(conn, row['id'], ttl_hours)
    conn.commit(); conn.close()
    print(f"token={token}")
    print(f"expires_at={expires_at}")


def main():
    parser = argparse.ArgumentParser(description='Lead Velocity admin utility')
    sub = parser.add_subparsers(dest='cmd', required=True)

    p1 = sub.add_parser('reset-admin')
    p1.add_argument('--email', default=app.config['ADMIN_EMAIL'])
    p1.add_argument('--password')

    p2 = sub.add_parser('grant-role')
    p2.add_argument('--email', required=True)
    p2.add_argument('--role', required=True, choices=ROLES)

    p3 = sub.add_parser('set-sla-threshold')
    p3.add_argument('--channel', required=True, choices=SLA_CHANNELS)
    p3.add_argument('--warning', type=int, required=True, help='seconds')
    p3.add_argument('--critical', type=int, required=True, help='seconds')
    p3.add_argument('--disable', action='store_true')

    p4 = sub.add_parser('issue-token')
    p4.add_argument('--email', required=True)
    p4.add_argument('--ttl-hours', type=int)

    args = parser.parse_args()

    with app.app_context():
        init_db()
        if args.cmd == 'reset-admin':
            reset_admin(args.email, args.password)
        elif args.cmd == 'grant-role':
            grant_role(args.email, args.role)
        elif args.cmd == 'set-sla-threshold':
            set_sla_threshold(args.channel, args.warning, args.critical, not args.disable)
        elif args.cmd == 'issue-token':
            issue_token(args.email, args.ttl_hours)


if __name__ == '__main__':
    main()
