import os
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, db_connect, init_db, issue_api_token
from services.ai_service import AIServiceError


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


WORST_CASE_ANSWERS = {
    'crmUsage': 'none',
    'speedToContact': 'nextDay',
    'teamSize': 'unclear',
    'followUpClarity': 'none',
    'monthlySpend': 'none',
    'cplAwareness': 'no',
    'pricingComfort': 'sensitive',
    'desiredLeadsWeekly': 100,
    'maxCapacityWeekly': 10,
    'productFocusClarity': 'unclear',
    'geographicFocusClarity': 'undefined',
    'growthGoalClarity': 'vague',
    'timeline': 'exploring',
}


def submit(client, answers=None, **overrides):
    payload = {
        'fullName': 'Sipho Dlamini',
        'email': 'Sipho@Example.com',
        'phone': '+27825550100',
        'companyName': 'Dlamini Brokers',
        'answers': answers or WORST_CASE_ANSWERS,
    }
    payload.update(overrides)
    return client.post('/functions/v1/submit-onboarding', json=payload)


def test_submit_onboarding_scores_and_stores(client):
    response = submit(client)
    assert response.status_code == 201
    body = response.get_json()
    assert body['success'] is True
    assert body['result']['successProbability'] == 12
    assert body['result']['successBand'] == 'Low'
    assert body['result']['primarySalesAngle'] == 'Cost Efficiency'
    assert body['result']['riskFlags'][0] == 'Operational Risk'

    conn = db_connect()
    response_row = conn.execute('SELECT * FROM broker_onboarding_responses WHERE id = ?', (body['responseId'],)).fetchone()
    analysis_row = conn.execute('SELECT * FROM broker_analysis WHERE id = ?', (body['analysisId'],)).fetchone()
    conn.close()
    assert response_row['email'] == 'sipho@example.com'
    assert response_row['follow_up_process'] == 'none'
    assert response_row['timeline_to_start'] == 'exploring'
    assert analysis_row['response_id'] == body['responseId']
    assert analysis_row['ai_explanation'] is None


def test_submit_onboarding_accepts_flat_body(client):
    payload = dict(WORST_CASE_ANSWERS, fullName='Flat Body', email='flat@example.com', phone='0825550100')
    response = client.post('/functions/v1/submit-onboarding', json=payload)
    assert response.status_code == 201


def test_submit_onboarding_rejects_unknown_value(client):
    answers = dict(WORST_CASE_ANSWERS, crmUsage='spreadsheet')
    response = submit(client, answers=answers)
    assert response.status_code == 400
    assert 'crm_usage' in response.get_json()['error']


@pytest.mark.parametrize('volume', [2 ** 63, '²'])
def test_submit_onboarding_rejects_unusable_volume(client, volume):
    answers = dict(WORST_CASE_ANSWERS, desiredLeadsWeekly=volume, maxCapacityWeekly=volume)
    response = submit(client, answers=answers)
    assert response.status_code == 400
    assert 'desired_leads_weekly' in response.get_json()['error']

    conn = db_connect()
    count = conn.execute('SELECT COUNT(*) FROM broker_onboarding_responses').fetchone()[0]
    conn.close()
    assert count == 0


def test_submit_onboarding_requires_contact_details(client):
    assert submit(client, fullName='').status_code == 400
    assert submit(client, email='not-an-email').status_code == 400


def test_analyze_requires_analysis_id(client):
    response = client.post('/functions/v1/analyze-broker-score', json={})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Missing analysisId'}


def test_analyze_unknown_analysis(client):
    response = client.post('/functions/v1/analyze-broker-score', json={'analysisId': 'missing'})
    assert response.status_code == 500
    assert response.get_json() == {'error': 'Failed to fetch analysis'}


def test_analyze_uses_fallback_without_ai_key(client):
    analysis_id = submit(client).get_json()['analysisId']
    response = client.post('/functions/v1/analyze-broker-score', json={'analysisId': analysis_id})
    assert response.status_code == 200
    body = response.get_json()
    assert body['note'] == 'fallback used'
    assert 'Operational readiness is limited' in body['ai_explanation']
    assert 'lack of a CRM system' in body['ai_explanation']
    assert 'Key risks include Operational Risk and High Churn Risk' in body['ai_explanation']

    conn = db_connect()
    stored = conn.execute('SELECT ai_explanation FROM broker_analysis WHERE id = ?', (analysis_id,)).fetchone()
    conn.close()
    assert stored['ai_explanation'] == body['ai_explanation']


def test_analyze_uses_ai_text_when_available(client, monkeypatch):
    app.config['GEMINI_API_KEY'] = 'test-key'
    prompts = []

    def fake_generate_text(prompt, **kwargs):
        prompts.append(prompt)
        return 'Generated explanation.'

    monkeypatch.setattr('services.ai_service.generate_text', fake_generate_text)
    analysis_id = submit(client).get_json()['analysisId']
    response = client.post('/functions/v1/analyze-broker-score', json={'analysisId': analysis_id})
    body = response.get_json()
    assert body == {'success': True, 'ai_explanation': 'Generated explanation.'}
    assert 'Success Probability: 12% (Low)' in prompts[0]


def test_analyze_falls_back_when_ai_fails(client, monkeypatch):
    app.config['GEMINI_API_KEY'] = 'test-key'

    def failing_generate_text(prompt, **kwargs):
        raise AIServiceError('Gemini API responded with status 503')

    monkeypatch.setattr('services.ai_service.generate_text', failing_generate_text)
    analysis_id = submit(client).get_json()['analysisId']
    body = client.post('/functions/v1/analyze-broker-score', json={'analysisId': analysis_id}).get_json()
    assert body['success'] is True
    assert 'note' not in body
    assert body['ai_explanation'].startswith('Operational readiness')


def test_snapshot_pdf_download(client):
    analysis_id = submit(client).get_json()['analysisId']
    client.post('/functions/v1/analyze-broker-score', json={'analysisId': analysis_id})
    response = client.get(f'/functions/v1/broker-analysis/{analysis_id}/pdf', headers=admin_headers())
    assert response.status_code == 200
    assert response.mimetype == 'application/pdf'
    assert response.data.startswith(b'%PDF')
