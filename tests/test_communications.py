import json
import os
import tempfile
from datetime import timedelta

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import (
    app,
    bulk_email_html,
    db_connect,
    init_db,
    issue_api_token,
    new_id,
    personalize_message,
    sla_severity,
    utc_now,
    validate_bulk_payload,
)
from services.delivery import DeliveryResult


@pytest.fixture
def client():
    db_fd, db_path = tempfile.mkstemp()
    app.config.update(
        DATABASE_PATH=db_path,
        TESTING=True,
        MAIL_ENABLED=False,
        SERVICE_ROLE_KEY='service-key',
        GEMINI_API_KEY=None,
        TWILIO_ACCOUNT_SID=None,
        TWILIO_AUTH_TOKEN=None,
        TWILIO_PHONE_NUMBER=None,
        TWILIO_VALIDATE_SIGNATURES=False,
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        yield c
    os.close(db_fd)
    os.unlink(db_path)


def admin_headers():
    conn = db_connect()
    user_id = conn.execute('SELECT id FROM users WHERE email = ?', (app.config['ADMIN_EMAIL'].lower(),)).fetchone()['id']
    token, _ = issue_api_token(conn, user_id)
    conn.commit(); conn.close()
    return {'Authorization': f'Bearer {token}'}


def insert_inbound(lead_id, hours_ago, channel='email', metadata=None):
    comm_id = new_id()
    conn = db_connect()
    conn.execute(
        '''INSERT INTO communications (id, channel, direction, recipient_type, lead_id, status, metadata, created_at)
           VALUES (?, ?, 'inbound', 'lead', ?, 'delivered', ?, ?)''',
        (comm_id, channel, lead_id, json.dumps(metadata) if metadata else None,
         (utc_now() - timedelta(hours=hours_ago)).isoformat()),
    )
    conn.commit(); conn.close()
    return comm_id


def recipients(count, **fields):
    return [dict({'id': f'lead-{i}', 'first_name': f'Name{i}'}, **fields) for i in range(count)]


# ===== PURE HELPERS =====


def test_personalize_message_replaces_placeholders_case_insensitively():
    recipient = {'first_name': 'Thandi', 'last_name': 'Nkosi', 'email': 't@example.com', 'phone': '+27820000000'}
    message = personalize_message('Hi {First_Name} {last_name}, we have {EMAIL} and {phone}. {name}!', recipient)
    assert message == 'Hi Thandi Nkosi, we have t@example.com and +27820000000. Thandi Nkosi!'


def test_personalize_message_defaults_name():
    assert personalize_message('Dear {name}', {}) == 'Dear Valued Customer'
    assert personalize_message('Keep {unknown}', {}) == 'Keep {unknown}'


def test_bulk_email_html_escapes_markup_and_keeps_line_breaks():
    assert bulk_email_html('Hi\n<b>there</b>') == 'Hi<br>&lt;b&gt;there&lt;/b&gt;'


@pytest.mark.parametrize('payload,error', [
    ({'channel': 'call'}, 'Invalid channel. Must be email, sms, or whatsapp'),
    ({'channel': 'sms', 'recipients': []}, 'Recipients array is required and must not be empty'),
    ({'channel': 'sms', 'recipients': recipients(101, phone='1')}, 'Maximum 100 recipients allowed per batch'),
    ({'channel': 'sms', 'recipients': recipients(1, phone='1')}, 'Message template is required'),
    ({'channel': 'sms', 'recipients': recipients(1, phone='1'), 'message_template': 'x' * 5001},
     'Message template must be less than 5000 characters'),
    ({'channel': 'email', 'recipients': recipients(1, email='a@b.co'), 'message_template': 'hi'},
     'Email subject is required and must be less than 200 characters'),
    ({'channel': 'email', 'recipients': recipients(1, email='bad'), 'message_template': 'hi', 'subject': 'S'},
     'Invalid email for recipient lead-0'),
    ({'channel': 'whatsapp', 'recipients': recipients(1), 'message_template': 'hi'},
     'Phone number required for recipient lead-0'),
    ({'channel': 'sms', 'recipients': [{'phone': '1'}], 'message_template': 'hi'}, 'Each recipient must have a valid id'),
])
def test_validate_bulk_payload_errors(payload, error):
    assert validate_bulk_payload(payload) == error


def test_validate_bulk_payload_accepts_valid_batch():
    payload = {'channel': 'sms', 'recipients': recipients(100, phone='+27820000000'), 'message_template': 'hi'}
    assert validate_bulk_payload(payload) is None


def test_sla_severity_thresholds():
    threshold = {'warning_seconds': 3600, 'critical_seconds': 14400}
    assert sla_severity(3599, threshold) == (None, 0)
    assert sla_severity(3600, threshold) == ('warning', 3600)
    assert sla_severity(14400, threshold) == ('critical', 14400)


# ===== SEND COMMUNICATION =====


def test_send_communication_validates_input(client):
    headers = admin_headers()
    response = client.post('/functions/v1/send-communication', json={'channel': 'fax'}, headers=headers)
    assert response.status_code == 400
    response = client.post('/functions/v1/send-communication', json={'channel': 'sms', 'recipient_type': 'lead'}, headers=headers)
    assert response.get_json() == {'error': 'recipient_contact is required'}
    response = client.post('/functions/v1/send-communication',
                           json={'channel': 'sms', 'recipient_contact': '+1', 'recipient_type': 'partner'}, headers=headers)
    assert response.status_code == 400


def test_send_communication_records_response_time_and_raises_sla_alert(client, monkeypatch):
    sent_emails = []
    alerts = []
    monkeypatch.setattr('app.send_communication_email',
                        lambda to, subject, body: sent_emails.append((to, subject, body)) or DeliveryResult(success=True, external_id='msg-1'))
    monkeypatch.setattr('app.send_sla_alert_email',
                        lambda emails, alert: alerts.append((emails, alert)) or DeliveryResult(success=True))

    inbound_id = insert_inbound('lead-1', hours_ago=2)
    response = client.post('/functions/v1/send-communication', json={
        'channel': 'email',
        'recipient_contact': 'lead@example.com',
        'recipient_type': 'lead',
        'subject': 'Your cover',
        'content': '<p>Hello</p><script>alert(1)</script>',
        'lead_id': 'lead-1',
    }, headers=admin_headers())

    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['external_id'] == 'msg-1'
    assert '<script>' not in sent_emails[0][2]

    conn = db_connect()
    outbound = conn.execute('SELECT * FROM communications WHERE id = ?', (body['communication_id'],)).fetchone()
    inbound = conn.execute('SELECT metadata FROM communications WHERE id = ?', (inbound_id,)).fetchone()
    alert = conn.execute('SELECT * FROM sla_alerts').fetchone()
    conn.close()

    assert outbound['status'] == 'sent'
    assert outbound['responded_to_id'] == inbound_id
    assert outbound['response_time_seconds'] >= 7200
    assert json.loads(inbound['metadata'])['response_comm_id'] == body['communication_id']

    assert alert['severity'] == 'warning'
    assert alert['threshold_seconds'] == 3600
    assert alert['communication_id'] == body['communication_id']
    emails, alert_context = alerts[0]
    assert emails == [app.config['ADMIN_EMAIL'].lower()]
    assert alert_context['threshold_display'] == '1h 0m'


def test_answered_inbound_is_not_matched_again(client, monkeypatch):
    monkeypatch.setattr('app.send_communication_email', lambda *args: DeliveryResult(success=True))
    insert_inbound('lead-2', hours_ago=5, metadata={'responded_at': utc_now().isoformat()})
    response = client.post('/functions/v1/send-communication', json={
        'channel': 'email',
        'recipient_contact': 'lead@example.com',
        'recipient_type': 'lead',
        'lead_id': 'lead-2',
    }, headers=admin_headers())

    conn = db_connect()
    outbound = conn.execute('SELECT * FROM communications WHERE id = ?', (response.get_json()['communication_id'],)).fetchone()
    alert_count = conn.execute('SELECT COUNT(*) FROM sla_alerts').fetchone()[0]
    conn.close()
    assert outbound['responded_to_id'] is None
    assert outbound['response_time_seconds'] is None
    assert alert_count == 0


def test_send_communication_failure_is_recorded(client):
    response = client.post('/functions/v1/send-communication', json={
        'channel': 'sms',
        'recipient_contact': '+27820000000',
        'recipient_type': 'lead',
        'content': 'Hello',
    }, headers=admin_headers())
    assert response.status_code == 500
    body = response.get_json()
    assert body['success'] is False
    assert body['error'] == 'Twilio credentials not configured'

    conn = db_connect()
    row = conn.execute('SELECT status FROM communications WHERE id = ?', (body['communication_id'],)).fetchone()
    conn.close()
    assert row['status'] == 'failed'


def test_call_channel_is_logged_without_provider(client):
    response = client.post('/functions/v1/send-communication', json={
        'channel': 'call',
        'recipient_contact': '+27820000000',
        'recipient_type': 'broker',
        'broker_id': 'broker-1',
    }, headers=admin_headers())
    assert response.status_code == 200


# ===== BULK =====


def test_bulk_send_reports_per_recipient_results(client, monkeypatch):
    sent = []

    def fake_sms(to, body):
        sent.append((to, body))
        if to == '+2700':
            return DeliveryResult(success=False, error='Invalid number')
        return DeliveryResult(success=True, external_id=f'SM{len(sent)}')

    monkeypatch.setattr('services.messaging_service.send_sms', fake_sms)
    response = client.post('/functions/v1/send-bulk-communication', json={
        'channel': 'sms',
        'message_template': 'Hi {first_name}',
        'recipients': [
            {'id': 'lead-a', 'first_name': 'Ayanda', 'phone': '+2711'},
            {'id': 'lead-b', 'first_name': 'Bongani', 'phone': '+2700'},
        ],
    }, headers=admin_headers())

    assert response.status_code == 200
    body = response.get_json()
    assert body['total'] == 2
    assert body['sent'] == 1
    assert body['failed'] == 1
    assert body['success'] is False
    assert body['results'][1] == {'recipient_id': 'lead-b', 'success': False, 'error': 'Invalid number'}
    assert sent[0] == ('+2711', 'Hi Ayanda')

    conn = db_connect()
    rows = conn.execute('SELECT * FROM communications ORDER BY recipient_id').fetchall()
    conn.close()
    assert [r['status'] for r in rows] == ['sent', 'failed']
    assert json.loads(rows[0]['metadata']) == {'bulk_send': True, 'template_used': True}
    assert rows[0]['lead_id'] == 'lead-a'


def test_bulk_email_sends_escaped_html(client, monkeypatch):
    bodies = []
    monkeypatch.setattr('app.send_communication_email',
                        lambda to, subject, body: bodies.append((to, subject, body)) or DeliveryResult(success=True))
    response = client.post('/functions/v1/send-bulk-communication', json={
        'channel': 'email',
        'subject': 'Update',
        'message_template': 'Hi {name}\n<i>soon</i>',
        'recipients': [{'id': 'lead-a', 'first_name': 'Ayanda', 'last_name': 'Zulu', 'email': 'a@example.com'}],
    }, headers=admin_headers())
    assert response.get_json()['success'] is True
    assert bodies == [('a@example.com', 'Update', 'Hi Ayanda Zulu<br>&lt;i&gt;soon&lt;/i&gt;')]


def test_bulk_send_rejects_invalid_payload(client):
    response = client.post('/functions/v1/send-bulk-communication', json={'channel': 'sms', 'recipients': []}, headers=admin_headers())
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Recipients array is required and must not be empty'}


# ===== SLA ALERT FUNCTION =====


def test_send_sla_alert_with_service_key(client):
    response = client.post('/functions/v1/send-sla-alert', json={
        'channel': 'sms',
        'severity': 'critical',
        'response_time_seconds': 8000,
        'threshold_seconds': 7200,
        'recipient_type': 'lead',
    }, headers={'Authorization': 'Bearer service-key'})
    assert response.status_code == 200
    alert_id = response.get_json()['alert_id']

    conn = db_connect()
    row = conn.execute('SELECT * FROM sla_alerts WHERE id = ?', (alert_id,)).fetchone()
    conn.close()
    assert row['severity'] == 'critical'
    assert row['acknowledged'] == 0


def test_send_sla_alert_requires_fields(client):
    response = client.post('/functions/v1/send-sla-alert', json={'channel': 'sms'}, headers={'Authorization': 'Bearer service-key'})
    assert response.status_code == 400
