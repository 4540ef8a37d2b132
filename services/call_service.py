"""
AI call helpers
Call scripts, TwiML documents, Twilio status mapping and transcription analysis
for automated outbound calls and the inbound call line.
"""

from __future__ import annotations

import re
from typing import Optional

from twilio.twiml.voice_response import VoiceResponse

CALL_SCRIPTS = {
    'appointment_scheduling': "Hello {name}, this is an automated call from Lead Velocity on behalf of {broker}. I'm calling to schedule an appointment with you. Would you have time available this week? Please let me know your preferred date and time.",
    'appointment_rescheduling': "Hello {name}, this is an automated call from Lead Velocity. I'm calling regarding your upcoming appointment with {broker}. We need to reschedule. What alternative date and time would work best for you?",
    'follow_up': "Hello {name}, this is an automated call from Lead Velocity. I'm following up on your recent interaction with {broker}. I wanted to check in and see if you have any questions or if there's anything we can help you with.",
    'voice_note': "Hello, this is an automated message from Lead Velocity on behalf of {broker}. We wanted to reach out and let you know that we're here to assist you. Please call us back at your earliest convenience.",
    'general_inquiry': "Hello {name}, this is an automated call from Lead Velocity. We're reaching out on behalf of {broker} to learn more about your needs and how we can assist you. Do you have a few minutes to chat?",
    'reminder': "Hello {name}, this is a friendly reminder from Lead Velocity about your upcoming appointment with {broker}. Please confirm your attendance or contact us if you need to make any changes.",
    'referral_generation': "Hello {name}, this is an automated call from Lead Velocity on behalf of {broker}. We recently helped you with your policy, and we'd love to help your friends or family too. If you have 5 people in mind who could benefit from our service, please stay on the line to provide their details or leave a message after the beep.",
    'policy_review': "Hello {name}, this is a courtesy call from Lead Velocity for {broker}. We're conducting annual policy reviews to ensure your coverage is still the best fit for your needs. Would you like to schedule a 5-minute review call this week?",
}

REFERRAL_DISCOVERY_SCRIPT = (
    "Hello {name}, this is an automated call from Lead Velocity on behalf of {broker}. "
    "I'm reaching out{connection}{service}. We'd like to schedule a brief discovery call "
    "to see how we can assist you. Would you have time this week?"
)

REFERRAL_REASON_LABELS = {
    'estate_planning': 'Estate Planning',
    'financial_advice': 'Financial Advice',
}

LEAVE_MESSAGE_PROMPT = 'Please leave a message after the beep, or press any key to speak with a representative.'

INBOUND_STATUS_MAP = {
    'ringing': 'ringing',
    'in-progress': 'in-progress',
    'completed': 'completed',
    'busy': 'missed',
    'failed': 'failed',
    'no-answer': 'missed',
    'canceled': 'canceled',
}

FAILED_CALL_STATUSES = ('failed', 'busy', 'no-answer', 'canceled')

DATE_PATTERNS = [
    re.compile(r'(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)', re.IGNORECASE),
    re.compile(r'(?:january|february|march|april|may|june|july|august|september|october|november|december)\s+\d{1,2}', re.IGNORECASE),
    re.compile(r'\d{1,2}(?:st|nd|rd|th)?\s+(?:of\s+)?(?:january|february|march|april|may|june|july|august|september|october|november|december)', re.IGNORECASE),
    re.compile(r'tomorrow|next week|next month', re.IGNORECASE),
]

TIME_PATTERNS = [
    re.compile(r'\d{1,2}(?::\d{2})?\s*(?:am|pm)', re.IGNORECASE),
    re.compile(r'(?:morning|afternoon|evening)', re.IGNORECASE),
]

ACTION_LABELS = {
    'cancellation_requested': 'Cancellation Requested',
    'callback_requested': 'Callback Requested',
    'confirmed': 'Confirmed',
}


# ===== OUTBOUND SCRIPTS =====

def referral_reason_label(will_status: Optional[str]) -> str:
    """Referral reasons are stored as '<reason>|<detail>' in will_status."""
    if not will_status or '|' not in will_status:
        return ''
    reason_key = will_status.split('|')[0]
    return 'Estate Planning' if reason_key == 'estate_planning' else 'Financial Advice'


def broker_name_from_details(details: Optional[str]) -> str:
    if details and 'Broker:' in details:
        return details.split('Broker:')[1].strip()
    return 'Lead Velocity'


def build_call_script(call_purpose, recipient_name, broker_name, *, recipient_type='lead', referral_reason='', referrer_name=''):
    script = CALL_SCRIPTS.get(call_purpose, CALL_SCRIPTS['general_inquiry'])

    if recipient_type == 'referral' and call_purpose in ('appointment_scheduling', 'general_inquiry'):
        script = REFERRAL_DISCOVERY_SCRIPT.format(
            name='{name}',
            broker='{broker}',
            connection=f' as you were referred by {referrer_name}' if referrer_name else '',
            service=f' regarding your {referral_reason}' if referral_reason else '',
        )

    return script.replace('{name}', recipient_name or 'there').replace('{broker}', broker_name)


def build_outbound_twiml(script: str, record_action: str, transcribe_callback: str, *, voice: str, language: str) -> str:
    vr = VoiceResponse()
    vr.say(script, voice=voice, language=language)
    vr.pause(length=2)
    vr.say(LEAVE_MESSAGE_PROMPT, voice=voice, language=language)
    vr.record(
        max_length=120,
        action=record_action,
        transcribe=True,
        transcribe_callback=transcribe_callback,
    )
    return str(vr)


# ===== STATUS CALLBACKS =====

def map_ai_call_status(twilio_status: Optional[str]) -> str:
    if twilio_status == 'completed':
        return 'completed'
    if twilio_status in FAILED_CALL_STATUSES:
        return 'failed'
    return 'in_progress'


def status_update_fields(twilio_status, duration, recording_url) -> dict:
    status = map_ai_call_status(twilio_status)
    fields = {'call_status': status}
    if duration:
        fields['call_duration'] = int(duration)
    if recording_url:
        fields['call_recording_url'] = recording_url

    if status == 'completed':
        recording_note = 'Recording available.' if recording_url else 'No recording.'
        fields['call_summary'] = f'Call completed. Duration: {duration or 0} seconds. {recording_note}'
    elif status == 'failed':
        fields['call_summary'] = f'Call {twilio_status}. Unable to reach recipient.'
    return fields


def map_inbound_status(twilio_status: Optional[str]) -> Optional[str]:
    return INBOUND_STATUS_MAP.get(twilio_status, twilio_status)


# ===== TRANSCRIPTION ANALYSIS =====

def analyze_transcription(text: str, purpose: str) -> Optional[dict]:
    """Look for requested changes in a call transcription; None when nothing was found."""
    lower_text = text.lower()
    changes = {}

    if 'appointment' in purpose or 'rescheduling' in purpose:
        for pattern in DATE_PATTERNS:
            match = pattern.search(text)
            if match:
                changes['suggested_date'] = match.group(0)
                break
        for pattern in TIME_PATTERNS:
            match = pattern.search(text)
            if match:
                changes['suggested_time'] = match.group(0)
                break

    # later matches take precedence
    if any(phrase in lower_text for phrase in ('cancel', 'not interested', 'remove')):
        changes['action'] = 'cancellation_requested'
    if any(phrase in lower_text for phrase in ('call back', 'callback', 'call me back')):
        changes['action'] = 'callback_requested'
    if any(phrase in lower_text for phrase in ('confirm', 'yes', 'sounds good')):
        changes['action'] = 'confirmed'

    return changes or None


def humanize_purpose(purpose: str) -> str:
    return re.sub(r'\b\w', lambda m: m.group(0).upper(), purpose.replace('_', ' '))


def generate_call_summary(text: str, purpose: str, changes: Optional[dict]) -> str:
    lines = ['AI Call Summary', '', f'Purpose: {humanize_purpose(purpose)}', '', 'Transcription:', f'"{text}"', '']

    if changes:
        lines.append('Detected Actions/Changes:')
        if changes.get('suggested_date'):
            lines.append(f"- Suggested Date: {changes['suggested_date']}")
        if changes.get('suggested_time'):
            lines.append(f"- Suggested Time: {changes['suggested_time']}")
        if changes.get('action'):
            lines.append(f"- Action: {ACTION_LABELS.get(changes['action'], changes['action'])}")
        lines.append('')
        lines.append('Admin approval required for any changes.')
    else:
        lines.append('No specific actions or changes detected.')

    return '\n'.join(lines)


# ===== INBOUND LINE =====

def caller_search_digits(caller_number: Optional[str]) -> str:
    """Strip a one-digit country prefix and any formatting from a caller number."""
    cleaned = re.sub(r'^\+\d', '', caller_number or '')
    return re.sub(r'\D', '', cleaned)


def inbound_greeting_twiml() -> str:
    vr = VoiceResponse()
    vr.say(
        'Thank you for calling Lead Velocity. Please hold while we connect you to a representative.',
        voice='Polly.Joanna',
        language='en-US',
    )
    vr.play('https://api.twilio.com/cowbell.mp3')
    vr.record(max_length=300, transcribe=True, play_beep=True)
    return str(vr)


def inbound_unavailable_twiml() -> str:
    vr = VoiceResponse()
    vr.say('We\'re sorry, but we are unable to take your call at this time. Please try again later.', voice='Polly.Joanna')
    return str(vr)


def hangup_twiml() -> str:
    vr = VoiceResponse()
    vr.say('Thank you. Your message has been recorded. Goodbye.', voice='Polly.Ayanda', language='en-ZA')
    vr.hangup()
    return str(vr)
