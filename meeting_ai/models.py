"""
Data types exchanged between the sync engine and its AI, calendar and CRM
collaborators.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

INTENTS = (
    'schedule_meeting',
    'reschedule_meeting',
    'cancel_meeting',
    'follow_up',
    'general',
)


@dataclass
class ParsedEmailData:
    """Meeting details extracted from one email body."""
    intent: str = 'general'
    contact_name: str = 'Unknown Contact'
    email: str = ''
    company: str = 'Unknown Company'
    datetime: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    confidence: float = 0.0
    reasoning: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'intent': self.intent,
            'contact_name': self.contact_name,
            'email': self.email,
            'company': self.company,
            'datetime': self.datetime,
            'participants': list(self.participants),
            'confidence': self.confidence,
            'reasoning': self.reasoning,
        }


@dataclass
class ParseResponse:
    success: bool
    data: Optional[ParsedEmailData] = None
    error: Optional[str] = None
    raw_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'data': self.data.to_dict() if self.data else None,
            'error': self.error,
            'raw_response': self.raw_response,
        }


@dataclass
class TimeSlot:
    start: str
    end: str
    available: bool

    def to_dict(self) -> Dict[str, Any]:
        return {'start': self.start, 'end': self.end, 'available': self.available}


@dataclass
class Availability:
    """Free/busy view of one day; suggested_times are "HH:MM" slot starts."""
    date: str
    slots: List[TimeSlot] = field(default_factory=list)
    suggested_times: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date,
            'slots': [s.to_dict() for s in self.slots],
            'suggested_times': list(self.suggested_times),
        }


@dataclass
class ScheduleRequest:
    title: str
    start: datetime
    end: datetime
    attendees: List[str] = field(default_factory=list)
    description: Optional[str] = None
    location: Optional[str] = None


@dataclass
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    attendees: List[str] = field(default_factory=list)
    location: Optional[str] = None
    description: Optional[str] = None
    status: str = 'confirmed'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'attendees': list(self.attendees),
            'location': self.location,
            'description': self.description,
            'status': self.status,
        }


@dataclass
class CRMContact:
    name: str
    email: str
    company: str
    source: str = 'email_parsing'
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'company': self.company,
            'source': self.source,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class CRMSyncRequest:
    contact: CRMContact
    email_content: Optional[str] = None


@dataclass
class CRMSyncResponse:
    success: bool
    action: Optional[str] = None
    contact: Optional[CRMContact] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'action': self.action,
            'contact': self.contact.to_dict() if self.contact else None,
            'error': self.error,
        }
