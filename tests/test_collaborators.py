"""Tests for the CRM collaborator and the LLM backends."""

import configparser
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from meeting_ai.crm_service import CRMNotConnected, InMemoryCRM
from meeting_ai.llm import AnthropicLLM, LLMError, LocalLLM, OpenAILLM, create_llm_instance
from meeting_ai.models import CRMContact, CRMSyncRequest


def make_config(provider: str = "local") -> configparser.ConfigParser:
    cfg = configparser.ConfigParser()
    cfg["models"] = {"provider": provider, "llm_model": "mistral", "llm_api_url": "http://ollama:11434/api"}
    cfg["system"] = {"temperature": "0.1", "max_token_limit": "500"}
    cfg["openai"] = {"api_key": "sk-test", "request_delay": "0"}
    cfg["anthropic"] = {"api_key": "", "request_delay": "0"}
    return cfg


# ============================================================================
# Tests: CRM
# ============================================================================

class TestInMemoryCRM:

    @pytest.fixture
    def crm(self):
        return InMemoryCRM(clock=lambda: datetime(2024, 3, 1, tzinfo=timezone.utc))

    def request(self, email="Jane@Globex.com", name="Jane", content="Lunch next week?"):
        return CRMSyncRequest(contact=CRMContact(name=name, email=email, company="Globex"), email_content=content)

    def test_default_providers(self, crm):
        ids = [p.id for p in crm.get_providers()]
        assert ids[:3] == ["hubspot", "salesforce", "pipedrive"]
        assert not crm.has_connected_provider()

    @pytest.mark.asyncio
    async def test_requires_connected_provider(self, crm):
        with pytest.raises(CRMNotConnected):
            await crm.sync_contact(self.request())

    @pytest.mark.asyncio
    async def test_upsert_by_email(self, crm):
        assert crm.connect_provider("hubspot")

        first = await crm.sync_contact(self.request())
        second = await crm.sync_contact(self.request(email="jane@globex.com", name="Jane Doe"))

        assert first.action == "created"
        assert second.action == "updated"
        assert len(crm.get_contacts()) == 1
        assert crm.find_contact("JANE@globex.com").name == "Jane Doe"
        assert len(crm.get_contact_history(first.contact.id)) == 2

    def test_connect_unknown_provider(self, crm):
        assert not crm.connect_provider("rolodex")
        assert not crm.disconnect_provider("rolodex")

    def test_disconnect(self, crm):
        crm.connect_provider("airtable")
        crm.disconnect_provider("airtable")
        assert not crm.has_connected_provider()


# ============================================================================
# Tests: LLM backends
# ============================================================================

class TestCreateLLMInstance:

    def test_providers(self):
        assert isinstance(create_llm_instance(make_config("local")), LocalLLM)
        assert isinstance(create_llm_instance(make_config("openai")), OpenAILLM)
        assert isinstance(create_llm_instance(make_config("anthropic")), AnthropicLLM)
        assert create_llm_instance(make_config("none")) is None

    def test_unknown_provider_uses_local(self):
        assert isinstance(create_llm_instance(make_config("gemini")), LocalLLM)


class TestLocalLLM:

    @patch("meeting_ai.llm.requests.post")
    def test_json_mode_request(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200, json=MagicMock(return_value={"response": "{}"}))
        llm = LocalLLM(make_config())

        assert llm.get_completion("prompt", system="sys", json_mode=True) == "{}"

        payload = mock_post.call_args.kwargs["json"]
        assert mock_post.call_args.args[0] == "http://ollama:11434/api/generate"
        assert payload["format"] == "json"
        assert payload["system"] == "sys"
        assert payload["options"] == {"temperature": 0.1, "num_predict": 500}

    @patch("meeting_ai.llm.requests.post")
    def test_default_request_timeout(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200, json=MagicMock(return_value={"response": "ok"}))

        LocalLLM(make_config()).get_completion("prompt")

        assert mock_post.call_args.kwargs["timeout"] == 60.0

    @patch("meeting_ai.llm.requests.post")
    def test_unavailable_raises(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(LLMError):
            LocalLLM(make_config()).get_completion("prompt")

    @patch("meeting_ai.llm.requests.post")
    def test_error_status_raises(self, mock_post):
        mock_post.return_value = MagicMock(status_code=500, text="boom")

        with pytest.raises(LLMError):
            LocalLLM(make_config()).get_completion("prompt")


class TestOpenAILLM:

    @patch("openai.OpenAI")
    def test_client_gets_request_timeout(self, mock_openai):
        cfg = make_config("openai")
        cfg["system"]["request_timeout"] = "12"

        OpenAILLM(cfg)._get_client()

        mock_openai.assert_called_once_with(api_key="sk-test", timeout=12.0)

    def test_json_response_format(self):
        llm = OpenAILLM(make_config("openai"))
        client = MagicMock()
        client.chat.completions.create.return_value.choices = [MagicMock(message=MagicMock(content='{"a": 1}'))]
        llm._client = client

        assert llm.get_completion("prompt", system="sys", json_mode=True) == '{"a": 1}'

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}


class TestAnthropicLLM:

    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

        with pytest.raises(LLMError):
            AnthropicLLM(make_config("anthropic")).get_completion("prompt")
