"""
Configuration loading and service wiring.

Settings come from config.ini (path overridable with INBOX_ROOMS_CONFIG);
secrets may instead be supplied through the environment or a .env file.
"""

import configparser
import logging
import os
from pathlib import Path
from typing import Dict, Optional

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path, override=True)

from api.email.credentials import CredentialSession
from api.email.providers import GoogleTokenSource, MsalTokenSource, ProviderType, create_provider
from api.email.service import InboxService
from api.email.storage import MemorySessionStore, SessionStore, SQLiteSessionStore
from meeting_ai.calendar_service import CALENDAR_SCOPES, GoogleCalendarService, InMemoryCalendar
from meeting_ai.crm_service import InMemoryCRM
from meeting_ai.email_parser import EmailParser
from meeting_ai.llm import create_llm_instance

logger = logging.getLogger(__name__)

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONFIG_PATH = os.environ.get('INBOX_ROOMS_CONFIG', os.path.join(PROJECT_ROOT, "config.ini"))

# (environment variable, section, option)
ENV_OVERRIDES = [
    ('GOOGLE_CLIENT_ID', 'gmail', 'client_id'),
    ('GOOGLE_CLIENT_SECRET', 'gmail', 'client_secret'),
    ('OUTLOOK_CLIENT_ID', 'outlook', 'client_id'),
    ('OPENAI_API_KEY', 'openai', 'api_key'),
    ('ANTHROPIC_API_KEY', 'anthropic', 'api_key'),
]

DEFAULT_SECTIONS = ('app', 'gmail', 'outlook', 'sync', 'calendar', 'crm', 'models', 'system')


def load_config(config_path: str = None) -> configparser.ConfigParser:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = CONFIG_PATH
    cfg = configparser.ConfigParser()
    if os.path.exists(config_path):
        cfg.read(config_path)
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")

    for section in DEFAULT_SECTIONS:
        if not cfg.has_section(section):
            cfg.add_section(section)

    for env_name, section, option in ENV_OVERRIDES:
        value = os.environ.get(env_name)
        if value:
            if not cfg.has_section(section):
                cfg.add_section(section)
            cfg[section][option] = value

    return cfg


def build_session_store(cfg: configparser.ConfigParser) -> SessionStore:
    db_path = cfg.get('app', 'session_db', fallback='sessions.db').strip()
    if not db_path:
        logger.info("Using in-memory session store")
        return MemorySessionStore()
    if not os.path.isabs(db_path):
        db_path = os.path.join(PROJECT_ROOT, db_path)
    return SQLiteSessionStore(db_path)


def _resolve_path(value: str) -> Optional[str]:
    value = (value or '').strip()
    if not value:
        return None
    return value if os.path.isabs(value) else os.path.join(PROJECT_ROOT, value)


def _google_token_source(cfg, store: SessionStore, **kwargs) -> GoogleTokenSource:
    return GoogleTokenSource(
        store,
        client_secrets_file=_resolve_path(cfg.get('gmail', 'client_secrets_file', fallback='')),
        client_id=cfg.get('gmail', 'client_id', fallback='') or None,
        client_secret=cfg.get('gmail', 'client_secret', fallback='') or None,
        redirect_port=cfg.getint('gmail', 'redirect_port', fallback=0),
        interactive_timeout=cfg.getint('sync', 'interactive_timeout', fallback=300),
        **kwargs,
    )


def build_sessions(cfg: configparser.ConfigParser, store: SessionStore) -> Dict[ProviderType, CredentialSession]:
    """One credential session per mailbox provider kind."""
    interactive_timeout = cfg.getfloat('sync', 'interactive_timeout', fallback=300.0)

    gmail_source = _google_token_source(cfg, store)
    outlook_source = MsalTokenSource(
        store,
        client_id=cfg.get('outlook', 'client_id', fallback='') or None,
        authority=cfg.get('outlook', 'authority', fallback='') or None,
        interactive_timeout=int(interactive_timeout),
    )

    sessions = {
        ProviderType.GMAIL: CredentialSession(
            ProviderType.GMAIL.value, gmail_source, store, interactive_timeout=interactive_timeout
        ),
        ProviderType.OUTLOOK: CredentialSession(
            ProviderType.OUTLOOK.value, outlook_source, store, interactive_timeout=interactive_timeout
        ),
    }
    for session in sessions.values():
        session.restore()
    return sessions


def build_calendar(cfg: configparser.ConfigParser, store: SessionStore):
    """Calendar collaborator chosen by [calendar] provider (memory | google)."""
    provider = cfg.get('calendar', 'provider', fallback='memory').strip().lower()
    if provider == 'google':
        source = _google_token_source(
            cfg, store, scopes=CALENDAR_SCOPES, credentials_key='google_calendar_credentials'
        )
        if source.is_configured:
            session = CredentialSession('google_calendar', source, store)
            session.restore()
            return GoogleCalendarService(
                session,
                time_zone=cfg.get('calendar', 'time_zone', fallback='UTC'),
                calendar_id=cfg.get('calendar', 'calendar_id', fallback='primary'),
            )
        logger.warning("Google Calendar not configured, using in-memory calendar")
    elif provider != 'memory':
        logger.warning(f"Unknown calendar provider '{provider}', using in-memory calendar")
    return InMemoryCalendar()


def build_crm(cfg: configparser.ConfigParser) -> InMemoryCRM:
    crm = InMemoryCRM()
    for provider_id in cfg.get('crm', 'connect', fallback='').split(','):
        provider_id = provider_id.strip()
        if provider_id and not crm.connect_provider(provider_id):
            logger.warning(f"Unknown CRM provider in config: {provider_id}")
    return crm


def build_inbox_service(cfg: configparser.ConfigParser) -> InboxService:
    """Construct the inbox service and its collaborators from configuration."""
    store = build_session_store(cfg)
    sessions = build_sessions(cfg, store)
    demo_mode = cfg.get('app', 'demo_mode', fallback='auto')

    providers = [
        create_provider(provider_type, session=session, demo_mode=demo_mode)
        for provider_type, session in sessions.items()
    ]

    try:
        llm = create_llm_instance(cfg)
    except Exception as e:
        logger.warning(f"Could not initialize LLM: {e}")
        llm = None

    return InboxService(
        providers,
        parser=EmailParser(llm),
        calendar=build_calendar(cfg, store),
        crm=build_crm(cfg),
        tick_minutes=cfg.getfloat('sync', 'tick_minutes', fallback=5.0),
    )
