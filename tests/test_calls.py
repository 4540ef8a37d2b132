import json
import os
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, db_connect, identify_caller, init_db, issue_api_token, new_id, utc_now
from services import call_service
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


def configure_twilio():
    app.config.update(
        TWILIO_ACCOUNT_SID='AC123',
        TWILIO_AUTH_TOKEN='auth-token',
        TWILIO_PHONE_NUMBER='+27100000000',
    )


def insert_call_request(purpose='appointment_scheduling', name='Lerato'):
    call_id = new_id()
    conn = db_connect()
    conn.execute(
        '''INSERT INTO ai_call_requests (id, recipient_type, recipient_name, recipient_phone, call_purpose, call_status, created_at)
           VALUES (?, 'lead', ?, '+27820000000', ?, 'in_progress', ?)''',
        (call_id, name, purpose, utc_now().isoformat()),
    )
    conn.commit(); conn.close()
    return call_id


def fetch_call(call_id):
    conn = db_connect()
    row = conn.execute('SELECT * FROM ai_call_requests WHERE id = ?', (call_id,)).fetchone()
    conn.close()
    return row


# ===== CALL SERVICE =====


def test_build_call_script_fills_names():
    script = call_service.build_call_script('reminder', None, 'Acme Brokers')
    assert script.startswith('Hello there, this is a friendly reminder')
    assert 'Acme Brokers' in script


def test_build_call_script_unknown_purpose_uses_general_inquiry():
    script = call_service.build_call_script('something_else', 'Lerato', 'Lead Velocity')
    assert script == call_service.CALL_SCRIPTS['general_inquiry'].replace('{name}', 'Lerato').replace('{broker}', 'Lead Velocity')


def test_referral_script_mentions_referrer_and_reason():
    script = call_service.build_call_script(
        'general_inquiry', 'Naledi', 'Acme',
        recipient_type='referral', referral_reason='Estate Planning', referrer_name='Jane Doe',
    )
    assert 'as you were referred by Jane Doe regarding your Estate Planning' in script
    assert script.startswith('Hello Naledi')


def test_referral_reason_and_broker_helpers():
    assert call_service.referral_reason_label('estate_planning|Needs a will') == 'Estate Planning'
    assert call_service.referral_reason_label('financial_advice|Retirement') == 'Financial Advice'
    assert call_service.referral_reason_label('No will') == ''
    assert call_service.broker_name_from_details('Follow up. Broker: Acme Brokers') == 'Acme Brokers'
    assert call_service.broker_name_from_details(None) == 'Lead Velocity'


def test_outbound_twiml_records_with_callbacks():
    twiml = call_service.build_outbound_twiml(
        'Hello', 'https://api.example.com/record', 'https://api.example.com/transcribe',
        voice='Polly.Ayanda', language='en-ZA',
    )
    assert twiml.startswith('<?xml')
    assert 'voice="Polly.Ayanda"' in twiml
    assert '>Hello</Say>' in twiml
    assert 'transcribeCallback="https://api.example.com/transcribe"' in twiml
    assert 'maxLength="120"' in twiml


@pytest.mark.parametrize('twilio_status,expected', [
    ('completed', 'completed'),
    ('busy', 'failed'),
    ('no-answer', 'failed'),
    ('ringing', 'in_progress'),
    (None, 'in_progress'),
])
def test_map_ai_call_status(twilio_status, expected):
    assert call_service.map_ai_call_status(twilio_status) == expected


def test_status_update_fields_summaries():
    completed = call_service.status_update_fields('completed', '42', None)
    assert completed == {
        'call_status': 'completed',
        'call_duration': 42,
        'call_summary': 'Call completed. Duration: 42 seconds. No recording.',
    }
    failed = call_service.status_update_fields('busy', None, None)
    assert failed['call_summary'] == 'Call busy. Unable to reach recipient.'


def test_analyze_transcription_finds_date_time_and_action():
    changes = call_service.analyze_transcription('Yes, Tuesday at 3pm works for me', 'appointment_scheduling')
    assert changes == {'suggested_date': 'Tuesday', 'suggested_time': '3pm', 'action': 'confirmed'}


def test_analyze_transcription_ignores_dates_for_other_purposes():
    assert call_service.analyze_transcription('Please call me back on Friday', 'follow_up') == {'action': 'callback_requested'}
    assert call_service.analyze_transcription('Hello there', 'follow_up') is None


def test_call_summary_lists_detected_changes():
    summary = call_service.generate_call_summary('I want to cancel', 'follow_up', {'action': 'cancellation_requested'})
    assert 'Purpose: Follow Up' in summary
    assert '- Action: Cancellation Requested' in summary
    assert summary.endswith('Admin approval required for any changes.')


def test_inbound_status_and_caller_digits():
    assert call_service.map_inbound_status('no-answer') == 'missed'
    assert call_service.map_inbound_status('queued') == 'queued'
    assert call_service.caller_search_digits('+1 (555) 010-2000') == '5550102000'
    assert call_service.caller_search_digits(None) == ''


# ===== INITIATE =====


def test_initiate_ai_call_requires_fields(client):
    response = client.post('/functions/v1/initiate-ai-call', json={'recipient_type': 'lead'}, headers=admin_headers())
    assert response.status_code == 400


def test_initiate_ai_call_without_twilio(client):
    response = client.post('/functions/v1/initiate-ai-call', json={
        'recipient_type': 'lead', 'recipient_phone': '+27820000000', 'call_purpose': 'follow_up',
    }, headers=admin_headers())
    assert response.status_code == 500
    assert response.get_json() == {'error': 'Twilio credentials not configured'}


def test_initiate_ai_call_places_call(client, monkeypatch):
    configure_twilio()
    placed = []

    def fake_place_call(to, twiml, status_callback):
        placed.append((to, twiml, status_callback))
        return DeliveryResult(success=True, external_id='CA999')

    monkeypatch.setattr('services.messaging_service.place_call', fake_place_call)
    response = client.post('/functions/v1/initiate-ai-call', json={
        'recipient_type': 'lead',
        'recipient_phone': '+27820000000',
        'recipient_name': 'Lerato',
        'call_purpose': 'follow_up',
        'call_purpose_details': 'Check in. Broker: Acme Brokers',
    }, headers=admin_headers())

    assert response.status_code == 200
    body = response.get_json()
    assert body['call_sid'] == 'CA999'
    to, twiml, status_callback = placed[0]
    assert to == '+27820000000'
    assert 'Hello Lerato' in twiml and 'Acme Brokers' in twiml
    assert status_callback.endswith(f"/functions/v1/handle-ai-call-status?callRequestId={body['call_request_id']}")

    row = fetch_call(body['call_request_id'])
    assert row['call_status'] == 'in_progress'
    assert row['call_sid'] == 'CA999'


def test_initiate_ai_call_failure_marks_request_failed(client, monkeypatch):
    configure_twilio()
    monkeypatch.setattr('services.messaging_service.place_call',
                        lambda *args: DeliveryResult(success=False, error='Number unreachable'))
    response = client.post('/functions/v1/initiate-ai-call', json={
        'recipient_type': 'lead', 'recipient_phone': '+27820000000', 'call_purpose': 'follow_up',
    }, headers=admin_headers())
    assert response.status_code == 500
    assert response.get_json() == {'error': 'Number unreachable'}

    conn = db_connect()
    row = conn.execute('SELECT call_status, admin_notes FROM ai_call_requests').fetchone()
    conn.close()
    assert row['call_status'] == 'failed'
    assert row['admin_notes'] == 'Number unreachable'


# ===== WEBHOOKS =====


def test_status_webhook_updates_request(client):
    call_id = insert_call_request()
    response = client.post(f'/functions/v1/handle-ai-call-status?callRequestId={call_id}', data={
        'CallStatus': 'completed',
        'CallDuration': '42',
        'RecordingUrl': 'https://api.twilio.com/rec/1',
    })
    assert response.status_code == 200
    assert response.data == b'OK'

    row = fetch_call(call_id)
    assert row['call_status'] == 'completed'
    assert row['call_duration'] == 42
    assert row['call_summary'] == 'Call completed. Duration: 42 seconds. Recording available.'


def test_status_webhook_rejects_non_numeric_duration(client):
    call_id = insert_call_request()
    response = client.post(f'/functions/v1/handle-ai-call-status?callRequestId={call_id}', data={
        'CallStatus': 'completed',
        'CallDuration': 'abc',
    })
    assert response.status_code == 400
    assert fetch_call(call_id)['call_status'] == 'in_progress'


def test_status_webhook_requires_call_request_id(client):
    response = client.post('/functions/v1/handle-ai-call-status', data={'CallStatus': 'completed'})
    assert response.status_code == 400


def test_recording_webhook_stores_url_and_hangs_up(client):
    call_id = insert_call_request()
    response = client.post(f'/functions/v1/handle-ai-call-recording?callRequestId={call_id}',
                           data={'RecordingUrl': 'https://api.twilio.com/rec/2'})
    assert response.mimetype == 'application/xml'
    assert b'<Hangup' in response.data
    assert fetch_call(call_id)['call_recording_url'] == 'https://api.twilio.com/rec/2'


def test_webhook_signature_is_enforced(client):
    app.config.update(TWILIO_VALIDATE_SIGNATURES=True, TWILIO_AUTH_TOKEN='auth-token')
    response = client.post('/functions/v1/handle-ai-call-status?callRequestId=x', data={'CallStatus': 'completed'})
    assert response.status_code == 403


def test_transcription_with_changes_notifies_admins(client, monkeypatch):
    notifications = []
    monkeypatch.setattr('app.send_ai_call_notification_email',
                        lambda emails, call: notifications.append((emails, call)) or DeliveryResult(success=True))
    call_id = insert_call_request()
    response = client.post(f'/functions/v1/handle-ai-call-transcription?callRequestId={call_id}', data={
        'TranscriptionText': 'Yes, Tuesday at 3pm works',
        'TranscriptionStatus': 'completed',
    })
    assert response.status_code == 200

    row = fetch_call(call_id)
    assert json.loads(row['proposed_changes'])['action'] == 'confirmed'
    assert row['changes_approved'] is None
    assert 'Detected Actions/Changes:' in row['call_summary']

    assert len(notifications) == 1
    emails, call = notifications[0]
    assert emails == [app.config['ADMIN_EMAIL'].lower()]
    assert call['recipient_name'] == 'Lerato'
    assert call['purpose_label'] == 'Appointment Scheduling'


def test_transcription_without_changes_skips_notification(client, monkeypatch):
    notifications = []
    monkeypatch.setattr('app.send_ai_call_notification_email',
                        lambda emails, call: notifications.append(call) or DeliveryResult(success=True))
    call_id = insert_call_request(purpose='follow_up')
    client.post(f'/functions/v1/handle-ai-call-transcription?callRequestId={call_id}', data={
        'TranscriptionText': 'Hello there',
        'TranscriptionStatus': 'completed',
    })
    row = fetch_call(call_id)
    assert row['changes_approved'] == 1
    assert row['proposed_changes'] is None
    assert notifications == []


def test_admins_can_opt_out_of_ai_call_emails(client, monkeypatch):
    notifications = []
    monkeypatch.setattr('app.send_ai_call_notification_email',
                        lambda emails, call: notifications.append(call) or DeliveryResult(success=True))
    conn = db_connect()
    admin_id = conn.execute('SELECT id FROM users WHERE email = ?', (app.config['ADMIN_EMAIL'].lower(),)).fetchone()['id']
    conn.execute(
        'INSERT INTO notification_preferences (id, user_id, ai_call_email, updated_at) VALUES (?, ?, 0, ?)',
        (new_id(), admin_id, utc_now().isoformat()),
    )
    conn.commit(); conn.close()

    app.config['MAIL_ENABLED'] = True
    response = client.post('/functions/v1/send-ai-call-notification', json={
        'call_request_id': 'call-1',
        'recipient_name': 'Lerato',
        'call_purpose': 'follow_up',
    }, headers={'Authorization': 'Bearer service-key'})
    assert response.get_json() == {'success': True, 'message': 'No admin emails to send', 'emails_sent': 0, 'emails_failed': 0}
    assert notifications == []


def test_ai_call_notification_requires_mail(client):
    response = client.post('/functions/v1/send-ai-call-notification', json={}, headers={'Authorization': 'Bearer service-key'})
    assert response.status_code == 500
    assert response.get_json() == {'error': 'Email service not configured'}


# ===== INBOUND LINE =====


def test_inbound_call_is_matched_and_upserted(client):
    conn = db_connect()
    conn.execute(
        "INSERT INTO leads (id, first_name, last_name, phone, created_at) VALUES ('lead-1', 'Zanele', 'Mokoena', '+27825551234', ?)",
        (utc_now().isoformat(),),
    )
    conn.commit(); conn.close()

    response = client.post('/functions/v1/handle-inbound-call', data={
        'CallSid': 'CA100', 'From': '+27825551234', 'To': '+27100000000', 'CallStatus': 'ringing',
    })
    assert response.mimetype == 'application/xml'
    assert b'Thank you for calling Lead Velocity' in response.data

    client.post('/functions/v1/handle-inbound-call', data={
        'CallSid': 'CA100', 'From': '+27825551234', 'To': '+27100000000', 'CallStatus': 'completed', 'CallDuration': '30',
    })

    conn = db_connect()
    rows = conn.execute("SELECT * FROM communications WHERE external_id = 'CA100'").fetchall()
    conn.close()
    assert len(rows) == 1
    assert rows[0]['lead_id'] == 'lead-1'
    assert rows[0]['sender_type'] == 'lead'
    assert rows[0]['status'] == 'completed'
    assert rows[0]['call_duration'] == 30
    assert json.loads(rows[0]['metadata'])['caller_name'] == 'Zanele Mokoena'


def test_identify_caller_falls_back_to_referral_then_broker(client):
    conn = db_connect()
    conn.execute(
        "INSERT INTO referrals (id, parent_lead_id, first_name, phone_number, created_at) VALUES ('ref-1', NULL, 'Naledi', '+27831112222', ?)",
        (utc_now().isoformat(),),
    )
    conn.execute(
        "INSERT INTO brokers (id, firm_name, contact_person, phone_number, created_at) VALUES ('broker-1', 'Acme', 'Pieter', '+27843334444', ?)",
        (utc_now().isoformat(),),
    )
    conn.commit()

    referral = identify_caller(conn, '+27831112222')
    broker = identify_caller(conn, '+27843334444')
    unknown = identify_caller(conn, '')
    conn.close()

    assert (referral['type'], referral['referral_id'], referral['name']) == ('referral', 'ref-1', 'Naledi')
    assert (broker['type'], broker['broker_id'], broker['name']) == ('broker', 'broker-1', 'Pieter')
    assert unknown['type'] == 'unknown'
    assert unknown['name'] == 'Unknown Caller'
