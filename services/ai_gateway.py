"""Client for the OpenAI-compatible AI chat completions gateway.

Used for testimonial analysis, sentiment tagging on submission, the
conversational AI interview and marketing content generation.
"""

from __future__ import annotations

import json
import logging
import re
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r'```json\n?|\n?```')

ANALYSIS_PROMPT = """You are an expert testimonial analyst for a SaaS business. Analyze the following customer testimonial and extract insights.

You must respond with a JSON object containing:
- happinessScore: number from 1-10 indicating how happy the customer is
- conversionPower: "low", "medium", or "high" - how persuasive this testimonial would be for prospects
- themes: array of 3-5 short phrases (2-3 words each) representing what the customer loves
- goldenQuotes: array of 2-3 short, impactful quotes (exact phrases from the testimonial) that would work well in marketing
- summary: one paragraph summarizing the testimonial's key message
- bestUsedFor: array of 2-4 placements where this testimonial would work best (e.g., "Homepage", "Pricing Page", "Sales Deck", "Email", "Social Media")

Respond ONLY with valid JSON, no markdown or other text."""

SENTIMENT_PROMPT = (
    'Analyze this testimonial and respond with JSON: '
    '{"sentiment": "positive"|"neutral"|"negative", "summary": "one sentence summary"}'
)

INTERVIEW_PROMPT = """You are a friendly AI interviewer collecting a testimonial. Have a natural conversation to extract a great testimonial.

Your conversation flow:
1. Ask about their overall experience
2. Probe for specific results or outcomes
3. Ask about favorite features
4. Get a recommendation quote

After 4-5 exchanges, compile their responses into a polished testimonial. When ready to complete, respond with JSON: {"complete": true, "testimonial": "compiled testimonial here"}

Keep responses warm, brief (1-2 sentences), and conversational. Use emojis sparingly."""

CONTENT_PROMPTS = {
    'twitter': """You are an expert social media copywriter who creates viral Twitter threads.
Create engaging Twitter threads that:
- Start with a strong hook that grabs attention
- Use emojis strategically but not excessively
- Include numbered tweets for easy reading
- End with a call to action
- Keep each tweet under 280 characters
- Use storytelling to make testimonials relatable""",
    'linkedin': """You are a LinkedIn content strategist who writes professional, engaging posts.
Create LinkedIn posts that:
- Start with a compelling opening line
- Tell a story that resonates with professionals
- Use proper formatting with line breaks for readability
- Include relevant hashtags at the end
- Maintain a professional yet personable tone
- End with a thought-provoking question or CTA""",
    'email': """You are an email marketing expert who writes high-converting sales sequences.
Create email snippets that:
- Have attention-grabbing subject line suggestions
- Use personalization placeholders like {first_name}
- Include social proof naturally
- Have clear CTAs
- Keep the tone warm and professional
- Be concise and scannable""",
    'casestudy': """You are a B2B content writer who creates compelling mini case studies.
Create case studies that:
- Follow the Challenge -> Solution -> Results format
- Include specific metrics and outcomes
- Use direct quotes from the testimonial
- Highlight the transformation
- Be concise but impactful
- Include a compelling headline""",
    'quote': """You are a brand copywriter who crafts shareable quote graphics.
Create quote content that:
- Extract the most impactful quote from the testimonial
- Keep it short and memorable (under 20 words ideally)
- Focus on results and emotions
- Include attribution with name and company
- Make it visually balanced for graphics""",
}

# generated_content.type values for each request content type
CONTENT_TYPE_STORAGE = {
    'twitter': 'twitter_thread',
    'linkedin': 'linkedin_post',
    'email': 'email_snippet',
    'casestudy': 'case_study',
    'quote': 'quote_graphic',
}

SENTIMENTS = ('positive', 'neutral', 'negative')


class AIGatewayError(Exception):
    status_code = 500

    def __init__(self, message='AI request failed'):
        super().__init__(message)
        self.message = message


class AIRateLimited(AIGatewayError):
    status_code = 429


class AICreditsExhausted(AIGatewayError):
    status_code = 402


def strip_code_fences(text):
    return _CODE_FENCE.sub('', text or '').strip()


class AIGatewayClient:
    def __init__(self, api_key, base_url, model, timeout=30.0, session=None):
        self.api_key = api_key
        self.base_url = (base_url or '').rstrip('/')
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get('AI_GATEWAY_API_KEY'),
            base_url=config.get('AI_GATEWAY_URL'),
            model=config.get('AI_MODEL'),
            timeout=config.get('AI_TIMEOUT_SECONDS', 30.0),
        )

    @property
    def configured(self):
        return bool(self.api_key)

    def complete(self, messages, *, failure_message='AI request failed',
                 rate_limit_message='Rate limit exceeded. Please try again later.',
                 credits_message='AI credits exhausted. Please add funds.',
                 **options):
        """Send a chat completion request and return the first choice's text."""
        if not self.api_key:
            raise AIGatewayError('AI gateway API key not configured')

        payload = {'model': self.model, 'messages': messages}
        payload.update(options)
        try:
            response = self.session.post(
                f'{self.base_url}/chat/completions',
                headers={
                    'Authorization': f'Bearer {self.api_key}',
                    'Content-Type': 'application/json',
                },
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error('AI gateway request error: %s', exc)
            raise AIGatewayError(failure_message) from exc

        if response.status_code == 429:
            raise AIRateLimited(rate_limit_message)
        if response.status_code == 402:
            raise AICreditsExhausted(credits_message)
        if not response.ok:
            logger.error('AI gateway error: %s %s', response.status_code, response.text[:500])
            raise AIGatewayError(failure_message)

        try:
            data = response.json()
        except ValueError as exc:
            raise AIGatewayError(failure_message) from exc
        choices = data.get('choices') or [{}]
        return ((choices[0] or {}).get('message') or {}).get('content') or ''


# ===== OPERATIONS =====


def analyze_testimonial(client, content, name=None, company=None, rating=None):
    if not content:
        raise AIGatewayError('Testimonial content is required')

    user_prompt = (
        'Analyze this testimonial:\n\n'
        f'Customer: {name} at {company}\n'
        f'Rating: {rating}/5 stars\n'
        f'Testimonial: "{content}"'
    )
    reply = client.complete(
        [
            {'role': 'system', 'content': ANALYSIS_PROMPT},
            {'role': 'user', 'content': user_prompt},
        ],
        failure_message='AI analysis failed',
    )
    if not reply:
        raise AIGatewayError('No response from AI')

    try:
        analysis = json.loads(strip_code_fences(reply))
    except ValueError:
        logger.error('Failed to parse AI response: %s', reply[:500])
        raise AIGatewayError('Invalid AI response format') from None
    if not isinstance(analysis, dict):
        raise AIGatewayError('Invalid AI response format')
    return analysis


def sentiment_from_happiness(score):
    try:
        score = float(score)
    except (TypeError, ValueError):
        return None
    if score >= 7:
        return 'positive'
    if score >= 4:
        return 'neutral'
    return 'negative'


def classify_sentiment(client, content, default='positive'):
    """Best-effort sentiment and one-line summary for a new submission.

    Never raises: gateway or parsing failures fall back to ``(default, None)``.
    """
    if not content or not client.configured:
        return default, None
    try:
        reply = client.complete([
            {'role': 'system', 'content': SENTIMENT_PROMPT},
            {'role': 'user', 'content': content},
        ])
    except AIGatewayError as exc:
        logger.error('AI analysis error: %s', exc)
        return default, None

    try:
        parsed = json.loads(strip_code_fences(reply))
    except ValueError:
        return default, None
    if not isinstance(parsed, dict):
        return default, None
    sentiment = parsed.get('sentiment')
    if sentiment not in SENTIMENTS:
        sentiment = default
    return sentiment, parsed.get('summary')


def interview_turn(client, messages: List[dict]):
    reply = client.complete(
        [{'role': 'system', 'content': INTERVIEW_PROMPT}, *messages],
        rate_limit_message='Rate limited',
        credits_message='Credits exhausted',
    )

    if '"complete": true' in reply or '"complete":true' in reply:
        try:
            parsed = json.loads(strip_code_fences(reply))
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
    return {'response': reply}


def _content_prompt(testimonials, content_type_info):
    lines = []
    for t in testimonials:
        revenue = t.get('revenue') or t.get('revenue_attributed')
        extra = f', ${revenue} attributed' if revenue else ''
        lines.append(
            f"- {t.get('name') or t.get('author_name')} from {t.get('company') or t.get('author_company')} "
            f"({t.get('rating')} stars{extra}): \"{t.get('content')}\""
        )
    info = content_type_info or {}
    return (
        'Based on the following customer testimonial(s), create a '
        f"{info.get('title', 'marketing piece')} ({info.get('subtitle', '')}):\n\n"
        + '\n'.join(lines)
        + '\n\nPlease create compelling content that highlights the customer\'s experience and results. '
        'Make it authentic and engaging.'
    )


def generate_content(client, testimonials, content_type, content_type_info: Optional[dict] = None):
    if not testimonials:
        raise AIGatewayError('No testimonials provided')
    if not content_type:
        raise AIGatewayError('Content type is required')

    system_prompt = CONTENT_PROMPTS.get(content_type, CONTENT_PROMPTS['twitter'])
    reply = client.complete(
        [
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': _content_prompt(testimonials, content_type_info)},
        ],
        failure_message='Failed to generate content',
        credits_message='Usage limit reached. Please add credits to your workspace.',
        max_completion_tokens=1000,
        temperature=0.7,
    )
    if not reply:
        raise AIGatewayError('No content generated')
    return reply
