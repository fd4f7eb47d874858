"""
AI-powered meeting extraction from email bodies.

The configured LLM is asked for a JSON object; its answer is validated and
gaps are filled from regex heuristics. Without an LLM, or when the model
call fails, the heuristics produce the whole result.
"""

import asyncio
import calendar
import json
import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional

from .llm import LLMError, LLMInterface
from .models import INTENTS, ParsedEmailData, ParseResponse

logger = logging.getLogger(__name__)

UNKNOWN_CONTACT = 'Unknown Contact'
UNKNOWN_COMPANY = 'Unknown Company'

# Seconds before a model call is abandoned for the heuristics
LLM_TIMEOUT = 90.0

EMAIL_RE = re.compile(r'[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}')

_MONTHS = {name.lower(): i for i, name in enumerate(calendar.month_name) if name}
_MONTHS.update({name.lower(): i for i, name in enumerate(calendar.month_abbr) if name})
_WEEKDAYS = {name.lower(): i for i, name in enumerate(calendar.day_name)}

_MONTH_DATE_RE = re.compile(
    r'\b(' + '|'.join(sorted(_MONTHS, key=len, reverse=True)) + r')\.?\s+'
    r'(\d{1,2})(?:st|nd|rd|th)?(?:,?\s+(\d{4}))?',
    re.IGNORECASE,
)
_ISO_DATE_RE = re.compile(r'\b(\d{4})-(\d{1,2})-(\d{1,2})\b')
_US_DATE_RE = re.compile(r'\b(\d{1,2})/(\d{1,2})/(\d{4})\b')
_WEEKDAY_RE = re.compile(r'\b(' + '|'.join(_WEEKDAYS) + r')\b', re.IGNORECASE)
_TIME_12H_RE = re.compile(r'\b(\d{1,2})(?:[:.](\d{2}))?\s*([ap])\.?m\.?(?![a-z])', re.IGNORECASE)
_TIME_24H_RE = re.compile(r'\b(\d{1,2})[:.](\d{2})\b')

_NAME = r'([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)'
_NAME_PATTERNS = [
    re.compile(r'this\s+is\s+' + _NAME),
    re.compile(
        r'(?:Best\s+regards|Kind\s+regards|Warm\s+regards|Regards|Best|Sincerely|'
        r'Thanks|Thank\s+you|Cheers),?\s*\n?\s*' + _NAME
    ),
    re.compile(r'\n\s*--\s*\n\s*' + _NAME),
]
_NOT_NAMES = {'Best', 'Regards', 'Thanks', 'Sincerely', 'Hello', 'Hi', 'Dear', 'Team'}

_COMPANY_WORDS = r'[A-Z][\w&]*(?:\s+[A-Z][\w&]*)*'
_COMPANY_SUFFIX_RE = re.compile(
    r'\b(' + _COMPANY_WORDS + r'\s+(?:Inc\.?|LLC|Corp\.?|Corporation|Ltd\.?|Limited|GmbH|Co\.))(?!\w)'
)
_COMPANY_AT_RE = re.compile(
    r'\b(?:recruiter|engineer|manager|director|work|working|employee)\s+(?:at|for)\s+(' + _COMPANY_WORDS + r')'
)
_NOT_COMPANIES = ('the team', 'the office', 'the meeting', 'our team', 'your convenience')

_INTENT_KEYWORDS = [
    ('reschedule_meeting', ('reschedule', 'move the meeting', 'change the time', 'postpone', 'push the meeting')),
    ('cancel_meeting', ('cancel', 'call off')),
    ('follow_up', ('follow up', 'following up', 'follow-up', 'checking in', 'circle back')),
    ('schedule_meeting', ('meeting', 'schedule', 'appointment', 'call', 'arrange', 'invite you to', 'catch up')),
]


def _next_date(today: date, month: int, day: int, year: Optional[int]) -> Optional[date]:
    try:
        if year:
            return date(year, month, day)
        candidate = date(today.year, month, day)
        if candidate < today:
            candidate = date(today.year + 1, month, day)
        return candidate
    except ValueError:
        return None


def _find_date(text: str, today: date) -> Optional[date]:
    lower = text.lower()

    match = _ISO_DATE_RE.search(text)
    if match:
        try:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            pass

    match = _MONTH_DATE_RE.search(text)
    if match:
        month = _MONTHS[match.group(1).lower()]
        year = int(match.group(3)) if match.group(3) else None
        found = _next_date(today, month, int(match.group(2)), year)
        if found:
            return found

    match = _US_DATE_RE.search(text)
    if match:
        try:
            return date(int(match.group(3)), int(match.group(1)), int(match.group(2)))
        except ValueError:
            pass

    if 'tomorrow' in lower:
        return today + timedelta(days=1)

    match = _WEEKDAY_RE.search(text)
    if match:
        weekday = _WEEKDAYS[match.group(1).lower()]
        ahead = (weekday - today.weekday()) % 7 or 7
        return today + timedelta(days=ahead)

    if 'today' in lower:
        return today
    return None


def _find_time(text: str) -> Optional[time]:
    match = _TIME_12H_RE.search(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if 1 <= hour <= 12 and minute < 60:
            if match.group(3).lower() == 'p' and hour != 12:
                hour += 12
            elif match.group(3).lower() == 'a' and hour == 12:
                hour = 0
            return time(hour, minute)

    for match in _TIME_24H_RE.finditer(text):
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour < 24 and minute < 60:
            return time(hour, minute)
    return None


def parse_datetime(text: str, today: date) -> Optional[str]:
    """
    Find a meeting date/time in free text.

    Returns "YYYY-MM-DDTHH:MM", or "YYYY-MM-DD" when no time is given, or
    None. A time without a date is taken to mean today.
    """
    found_date = _find_date(text, today)
    found_time = _find_time(text)

    if found_date and found_time:
        return datetime.combine(found_date, found_time).strftime('%Y-%m-%dT%H:%M')
    if found_date:
        return found_date.isoformat()
    if found_time:
        return datetime.combine(today, found_time).strftime('%Y-%m-%dT%H:%M')
    return None


def extract_contact_name(text: str) -> str:
    for pattern in _NAME_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1).strip()
            if name.split()[0] not in _NOT_NAMES:
                return name
    return UNKNOWN_CONTACT


def extract_company_name(text: str, contact_name: Optional[str] = None) -> str:
    candidates: List[str] = []

    match = _COMPANY_SUFFIX_RE.search(text)
    if match:
        candidates.append(match.group(1))

    if contact_name and contact_name != UNKNOWN_CONTACT:
        # Signature line: "<Name>, <Company>" or "<Name>\n<Company>"
        signature = re.search(re.escape(contact_name) + r'\s*[,\n]\s*(' + _COMPANY_WORDS + r')', text)
        if signature:
            candidates.append(signature.group(1))

    match = _COMPANY_AT_RE.search(text)
    if match:
        candidates.append(match.group(1))

    for company in candidates:
        company = company.strip()
        if any(phrase in company.lower() for phrase in _NOT_COMPANIES):
            continue
        if 2 < len(company) < 50:
            return company
    return UNKNOWN_COMPANY


def detect_intent(text: str) -> str:
    lower = text.lower()
    for intent, keywords in _INTENT_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return intent
    return 'general'


def calculate_confidence(contact_name: str, company: str, when: Optional[str], emails: List[str]) -> float:
    confidence = 0.5
    if contact_name != UNKNOWN_CONTACT:
        confidence += 0.2
    if company != UNKNOWN_COMPANY:
        confidence += 0.2
    if when:
        confidence += 0.2
    if emails:
        confidence += 0.1
    return min(0.95, round(confidence, 2))


class EmailParser:
    """
    Extracts meeting intent and contact details from email text.
    """

    SYSTEM_PROMPT = """You are an expert email parser that extracts meeting-related information.

Rules:
1. contact_name is the sender's actual name (from "this is <name>" or the signature), not a greeting.
2. company is the sender's organisation ("recruiter at <company>", signature lines).
3. datetime is the proposed meeting time as ISO 8601 "YYYY-MM-DDTHH:MM". Today is {today}; if the year is missing use the next occurrence of that date. Use null when no time is proposed.
4. participants are every email address mentioned.
5. intent is one of: schedule_meeting, reschedule_meeting, cancel_meeting, follow_up, general.
6. confidence is a number between 0.0 and 1.0.

Respond with ONLY a valid JSON object in this exact format:
{{"contact_name": "<name>", "email": "<sender email>", "company": "<company>", "datetime": "<YYYY-MM-DDTHH:MM or null>", "participants": ["<email>"], "intent": "<intent>", "confidence": <number>, "reasoning": "<brief explanation>"}}"""

    PROMPT_TEMPLATE = """Parse this email content and extract meeting information:

{body}

JSON Response:"""

    MAX_BODY_CHARS = 4000

    def __init__(
        self,
        llm: Optional[LLMInterface] = None,
        today: Callable[[], date] = date.today,
        timeout: float = LLM_TIMEOUT,
    ):
        """
        Initialize the parser.

        Args:
            llm: LLM instance for generating completions (optional)
            today: Clock used to resolve relative dates
            timeout: Seconds to wait for the model before using heuristics
        """
        self.llm = llm
        self.today = today
        self.timeout = timeout

    async def parse_email(self, body_text: str) -> ParseResponse:
        """
        Extract meeting details from an email body.

        Returns:
            ParseResponse; success=False means no usable result, which callers
            treat as "no intent" rather than an error
        """
        if not body_text or not body_text.strip():
            return ParseResponse(success=False, error='Empty email body')

        if self.llm is None:
            logger.debug("No LLM configured, using heuristic parsing")
            return self.fallback_parsing(body_text)

        loop = asyncio.get_running_loop()
        try:
            raw = await asyncio.wait_for(
                loop.run_in_executor(None, self._complete, body_text),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"LLM parsing timed out after {self.timeout}s, falling back to heuristics")
            return self.fallback_parsing(body_text)
        except LLMError as e:
            logger.warning(f"LLM parsing failed, falling back to heuristics: {e}")
            return self.fallback_parsing(body_text)

        data = self._parse_response(raw)
        if data is None:
            logger.error("Failed to parse LLM JSON response")
            return ParseResponse(success=False, error='Invalid JSON response from AI', raw_response=raw)

        cleaned = self._validate_and_clean(data, body_text)
        logger.info(f"Parsed email: intent={cleaned.intent} confidence={cleaned.confidence}")
        return ParseResponse(success=True, data=cleaned, raw_response=raw)

    def _complete(self, body_text: str) -> str:
        system = self.SYSTEM_PROMPT.format(today=self.today().isoformat())
        prompt = self.PROMPT_TEMPLATE.format(body=body_text[:self.MAX_BODY_CHARS])
        return self.llm.get_completion(prompt, temperature=0.1, max_tokens=500, system=system, json_mode=True)

    def _parse_response(self, response: str) -> Optional[Dict[str, Any]]:
        """Parse LLM response to extract the JSON object."""
        if not response:
            return None

        # First, try direct JSON parse
        try:
            data = json.loads(response.strip())
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

        # Try to find JSON object in response (participants may nest one level)
        json_match = re.search(r'\{(?:[^{}]|\[[^\[\]]*\])*\}', response, re.DOTALL)
        if json_match:
            try:
                return json.loads(json_match.group())
            except json.JSONDecodeError:
                pass
        return None

    def _validate_and_clean(self, data: Dict[str, Any], original: str) -> ParsedEmailData:
        contact_name = data.get('contact_name') or data.get('contactName') or extract_contact_name(original)
        company = data.get('company') or extract_company_name(original, contact_name)

        email = data.get('email') or ''
        if '@' not in email:
            match = EMAIL_RE.search(original)
            email = match.group(0) if match else ''

        when = data.get('datetime')
        if not when or str(when).lower() in ('null', 'not specified'):
            when = parse_datetime(original, self.today())

        participants = data.get('participants')
        if isinstance(participants, list):
            participants = [p for p in participants if isinstance(p, str) and '@' in p]
        else:
            participants = [email] if email else []

        try:
            confidence = float(data.get('confidence', 0.8))
        except (TypeError, ValueError):
            confidence = 0.8
        confidence = max(0.0, min(1.0, confidence))

        intent = data.get('intent') or 'general'
        if intent not in INTENTS:
            intent = 'general'

        return ParsedEmailData(
            intent=intent,
            contact_name=contact_name,
            email=email,
            company=company,
            datetime=when,
            participants=participants,
            confidence=confidence,
            reasoning=data.get('reasoning') or 'Extracted by language model',
        )

    def parse_heuristic(self, text: str) -> ParsedEmailData:
        """Regex based extraction used without an LLM."""
        emails = EMAIL_RE.findall(text)
        when = parse_datetime(text, self.today())
        contact_name = extract_contact_name(text)
        company = extract_company_name(text, contact_name)

        return ParsedEmailData(
            intent=detect_intent(text),
            contact_name=contact_name,
            email=emails[0] if emails else '',
            company=company,
            datetime=when,
            participants=emails[:3],
            confidence=calculate_confidence(contact_name, company, when, emails),
            reasoning='Heuristic parsing',
        )

    def fallback_parsing(self, text: str) -> ParseResponse:
        try:
            data = self.parse_heuristic(text)
        except Exception as e:
            logger.error(f"Heuristic parsing failed: {e}")
            return ParseResponse(success=False, error='Failed to parse email content')
        return ParseResponse(success=True, data=data, raw_response='Heuristic parsing used')
