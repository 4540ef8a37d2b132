"""Generative-AI text and transcription through the Gemini REST API."""

from __future__ import annotations

import base64
import json
import logging
from typing import Optional

import requests
from flask import current_app

logger = logging.getLogger(__name__)

TRANSCRIPTION_INSTRUCTIONS = (
    "You are a professional transcription assistant. Your task is to accurately transcribe audio recordings of phone calls.\n\n"
    "Instructions:\n"
    "- Transcribe the audio content word-for-word\n"
    "- If there are multiple speakers, identify them as 'Speaker 1:', 'Speaker 2:', etc.\n"
    "- Include timestamps at natural breaks (e.g., [0:15])\n"
    "- Note any unclear audio as [inaudible]\n"
    "- Include relevant non-speech sounds in brackets like [phone ringing], [pause], [laughter]\n"
    "- Format the transcript with proper punctuation and paragraphs for readability\n"
    "- If the audio quality is poor, do your best and note quality issues\n\n"
    "Return ONLY the transcript, no additional commentary.\n\n"
    "Please transcribe this phone call recording accurately:"
)


class AIServiceError(RuntimeError):
    """The AI provider is unavailable or answered with an error."""


def ai_configured() -> bool:
    return bool(current_app.config.get('GEMINI_API_KEY'))


def _generate(model: str, body: dict) -> dict:
    api_key = current_app.config.get('GEMINI_API_KEY')
    if not api_key:
        raise AIServiceError('GEMINI_API_KEY is not configured')

    url = f"{current_app.config['GEMINI_API_BASE']}/models/{model}:generateContent"
    try:
        response = requests.post(
            url,
            params={'key': api_key},
            json=body,
            timeout=current_app.config.get('AI_REQUEST_TIMEOUT', 60),
        )
    except requests.RequestException as exc:
        logger.exception('Gemini request failed model=%s', model)
        raise AIServiceError(f'AI request failed: {exc}') from exc

    if not response.ok:
        logger.error('Gemini API error model=%s status=%s body=%s', model, response.status_code, response.text[:500])
        raise AIServiceError(f'Gemini API responded with status {response.status_code}')
    return response.json()


def _first_text(result: dict) -> str:
    try:
        return result['candidates'][0]['content']['parts'][0]['text'] or ''
    except (KeyError, IndexError, TypeError):
        return ''


def generate_text(prompt: str, *, model: Optional[str] = None, generation_config: Optional[dict] = None) -> str:
    """Return the first candidate's text, or an empty string when there is none."""
    body = {'contents': [{'parts': [{'text': prompt}]}]}
    if generation_config:
        body['generationConfig'] = generation_config
    return _first_text(_generate(model or current_app.config['GEMINI_TEXT_MODEL'], body))


def generate_json(prompt: str, *, model: Optional[str] = None, temperature: float = 0.2) -> dict:
    text = generate_text(
        prompt,
        model=model,
        generation_config={'temperature': temperature, 'responseMimeType': 'application/json'},
    )
    if not text:
        raise AIServiceError('Invalid response structure from Gemini API.')
    try:
        return json.loads(text)
    except ValueError as exc:
        raise AIServiceError('Gemini API returned malformed JSON.') from exc


def transcribe_audio(audio: bytes, mime_type: str = 'audio/mpeg') -> str:
    body = {
        'contents': [
            {
                'role': 'user',
                'parts': [
                    {'text': TRANSCRIPTION_INSTRUCTIONS},
                    {'inline_data': {'mime_type': mime_type, 'data': base64.b64encode(audio).decode('ascii')}},
                ],
            }
        ],
        'generationConfig': {'maxOutputTokens': 4000},
    }
    return _first_text(_generate(current_app.config['GEMINI_AUDIO_MODEL'], body))


def download_recording(url: str) -> tuple:
    """Fetch a call recording; returns (bytes, mime type)."""
    try:
        response = requests.get(url, timeout=current_app.config.get('AI_REQUEST_TIMEOUT', 60))
    except requests.RequestException as exc:
        raise AIServiceError(f'Failed to fetch audio: {exc}') from exc
    if not response.ok:
        raise AIServiceError(f'Failed to fetch audio: {response.reason}')
    mime_type = (response.headers.get('Content-Type') or 'audio/mpeg').split(';')[0].strip()
    return response.content, mime_type


def legal_assistant_prompt(document_type: str, current_state, command: str) -> str:
    return (
        "You are an expert AI assistant who specialises in business documentation and South African law.\n"
        f"You are helping a user draft/refine a {document_type}. The user will provide the current {document_type} "
        "state and a command, request, or general \"vibe\" they want to achieve.\n\n"
        "Your job is to:\n"
        "1. Actively interpret their intent and refine the document accordingly.\n"
        "2. Make specific, high-quality recommendations that align with South African legal and business best practices.\n"
        "3. Explain *why* these changes benefit the user in your conversational response.\n\n"
        "Respond ONLY with a valid JSON object (no markdown, no backticks).\n"
        "The JSON object must have exactly three keys:\n"
        "1. \"response\": A short, confident, and professional conversational reply (max 3 sentences) summarising "
        "what you did, your recommendation, and why it benefits them.\n"
        "2. \"changes\": A flat object of key-value pairs representing ONLY the fields in the document state that "
        "should be updated. The keys must match the existing keys in the data. If no changes make sense, return an "
        "empty object.\n"
        "3. \"suggestions\": An array of 2 to 3 short, actionable follow-up prompt suggestions for the user.\n\n"
        f"Current {document_type} State:\n{json.dumps(current_state, indent=2)}\n\n"
        f"User Command/Intent:\n\"{command}\""
    )
