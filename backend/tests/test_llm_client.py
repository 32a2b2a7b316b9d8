import json

import httpx
import pytest

from studyquiz.errors import GenerationError
from studyquiz.llm_client import LlmClient, LlmConfig, strip_code_fences


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _reply(content, status=200):
    return httpx.Response(status, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def _client(handler, **overrides):
    config = LlmConfig(api_key="secret", base_url="https://llm.example.com/", **overrides)
    t = FakeTime()
    client = LlmClient(config, transport=httpx.MockTransport(handler), sleep=t.sleep, clock=t.clock)
    return client, t


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n[1, 2]\n```') == '[1, 2]'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'
    assert strip_code_fences(None) == ''


def test_chat_json_sends_json_mode_request_and_unwraps_reply():
    seen = {}

    def handler(request):
        seen['url'] = str(request.url)
        seen['auth'] = request.headers['Authorization']
        seen['body'] = json.loads(request.content)
        return _reply('```json\n{"questions": []}\n```')

    client, t = _client(handler, max_tokens=300)
    assert client.chat_json("sys", "usr") == '{"questions": []}'
    assert seen['url'] == "https://llm.example.com/chat/completions"
    assert seen['auth'] == "Bearer secret"
    body = seen['body']
    assert body['model'] == "deepseek-chat"
    assert body['response_format'] == {"type": "json_object"}
    assert body['max_tokens'] == 300
    assert [m['role'] for m in body['messages']] == ["system", "user"]
    assert t.sleeps == []


def test_retries_transient_statuses_with_backoff():
    statuses = [503, 429]

    def handler(request):
        if statuses:
            return httpx.Response(statuses.pop(0), text="busy")
        return _reply('{"ok": true}')

    client, t = _client(handler)
    assert client.chat_json("s", "u") == '{"ok": true}'
    assert t.sleeps == [0.5, 1.0]


def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text="bad request body")

    client, t = _client(handler)
    with pytest.raises(GenerationError) as exc:
        client.chat_json("s", "u")
    assert "LLM HTTP 400" in str(exc.value)
    assert "bad request body" in str(exc.value)
    assert len(calls) == 1
    assert t.sleeps == []


def test_gives_up_after_retries():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    client, _ = _client(handler, max_retries=2)
    with pytest.raises(GenerationError) as exc:
        client.chat_json("s", "u")
    assert "failed after 3 attempts" in str(exc.value)
    assert len(calls) == 3


def test_timeouts_are_retried_then_reported():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client, t = _client(handler)
    with pytest.raises(GenerationError) as exc:
        client.chat_json("s", "u")
    assert "timed out after 3 attempts" in str(exc.value)
    assert len(t.sleeps) == 2


def test_backoff_never_exceeds_overall_deadline():
    def handler(request):
        return httpx.Response(502)

    client, t = _client(handler, timeout_seconds=1.0, max_retries=5)
    with pytest.raises(GenerationError) as exc:
        client.chat_json("s", "u")
    assert "timed out after 1s" in str(exc.value)
    assert sum(t.sleeps) == pytest.approx(1.0)


@pytest.mark.parametrize("payload", [{"choices": []}, {"choices": [{"message": {"content": "  "}}]}, {}])
def test_malformed_replies_raise(payload):
    def handler(request):
        return httpx.Response(200, json=payload)

    client, _ = _client(handler)
    with pytest.raises(GenerationError):
        client.chat_json("s", "u")
