"""
AI Chat Module
Answers support questions through an OpenAI-compatible chat completions gateway
"""

import logging
import os
import random

from exceptions import EffectFailedError
from http_utils import gateway_request
from telemetry_utils import get_telemetry_sink

logger = logging.getLogger(__name__)

AI_GATEWAY_URL = os.environ.get('AI_GATEWAY_URL', 'https://ai.gateway.lovable.dev/v1/chat/completions')
AI_GATEWAY_API_KEY = os.environ.get('AI_GATEWAY_API_KEY')
AI_MODEL = os.environ.get('AI_MODEL', 'google/gemini-3-flash-preview')

SYSTEM_PROMPT = """You are KSF Assistant, a helpful AI for KSFoundation Web Hosting Platform.

Your capabilities:
- Answer hosting questions (shared, VPS, cloud, dedicated)
- Help with domain registration and DNS setup
- Explain billing, pricing (₹999-₹19,999 plans), and payment methods (UPI, PayU, Cashfree)
- Troubleshoot common hosting issues
- Guide users through cPanel and server management
- Explain SSL certificates and security features

Be concise, friendly, and professional. Use emojis sparingly.
If asked about something outside hosting/domains, politely redirect.
Always mention you can escalate to human support if needed."""

# Replies used while no gateway key is configured
DEMO_REPLIES = [
    "Hello! I'm the KSF Assistant (demo mode). I can help you with hosting questions, billing, and technical support.",
    "That's a great question! In production, I'd connect to our AI service to provide detailed answers.",
    "I understand. Let me help you with that, though I'm currently in demo mode.",
    "Thanks for reaching out! Our hosting plans start at ₹999/month. Would you like more details?",
    "I can assist with domain setup, SSL certificates, and server configuration. What do you need?",
]


class AiChatManager:
    """Manages the support assistant conversation"""

    @staticmethod
    def chat(identity, request_data):
        """
        Produce the assistant's next reply for a conversation

        Args:
            identity (Identity): Resolved caller
            request_data (dict): Validated chat payload (user/assistant turns)

        Returns:
            dict: Reply text, model used and whether it is a demo reply

        Raises:
            RateLimitedError: Gateway throttled the request (429)
            PaymentRequiredError: Gateway credits are exhausted (402)
            EffectFailedError: Gateway unreachable or returned an error
        """
        messages = request_data['messages']

        if not AI_GATEWAY_API_KEY:
            logger.info(f"AI gateway not configured, demo reply for user {identity.user_id}")
            get_telemetry_sink().track_event('ai_chat', {'demo': True})
            return {'reply': random.choice(DEMO_REPLIES), 'model': None, 'demo': True}

        completion = gateway_request(
            'AI gateway', 'POST', AI_GATEWAY_URL,
            rate_limited_message="Rate limit exceeded. Please try again in a moment.",
            payment_required_message="AI credits exhausted. Please contact support.",
            headers={'Authorization': f"Bearer {AI_GATEWAY_API_KEY}"},
            json={
                'model': AI_MODEL,
                'messages': [{'role': 'system', 'content': SYSTEM_PROMPT}] + messages,
                'stream': False
            }
        )

        reply = AiChatManager._reply_text(completion)
        logger.info(f"AI reply generated for user {identity.user_id} ({len(messages)} messages in)")
        get_telemetry_sink().track_event('ai_chat', {'demo': False})

        return {'reply': reply, 'model': completion.get('model') or AI_MODEL, 'demo': False}

    @staticmethod
    def _reply_text(completion):
        try:
            content = completion['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError) as e:
            raise EffectFailedError("AI gateway returned an invalid response", cause=e)
        if not isinstance(content, str):
            raise EffectFailedError("AI gateway returned an invalid response", cause="reply content is not text")
        return content
