"""Tests for the model service, vector index and Slack clients."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from productivity_agent.core.intent import IntentExtractor, PrimaryAction
from productivity_agent.db.models import Notification
from productivity_agent.integrations import slack as slack_mod
from productivity_agent.integrations.ai import AIClient, AIError
from productivity_agent.integrations.vector_index import VectorIndex, VectorIndexError


def _transport(handler, calls=None):
    def record(request: httpx.Request):
        if calls is not None:
            calls.append(request)
        return handler(request)

    return httpx.MockTransport(record)


class TestAIClient:
    def test_run_unwraps_result_envelope(self):
        calls = []
        client = AIClient(
            "https://ai.example.com/",
            api_token="secret",
            transport=_transport(
                lambda r: httpx.Response(200, json={"success": True, "result": {"response": "hi"}}), calls
            ),
        )
        assert client.run("cf/llama", {"messages": []}) == {"response": "hi"}
        assert str(calls[0].url) == "https://ai.example.com/run/cf/llama"
        assert calls[0].headers["authorization"] == "Bearer secret"
        assert json.loads(calls[0].content) == {"messages": []}

    def test_non_string_response_is_coerced(self):
        client = AIClient("https://ai", transport=_transport(lambda r: httpx.Response(200, json={"response": 42})))
        assert client.run("m", {})["response"] == "42"

    def test_structured_response_is_serialized_as_json(self):
        payload = {"result": {"response": {"primaryAction": "create_task", "extractedTasks": [{"title": "x"}]}}}
        client = AIClient("https://ai", transport=_transport(lambda r: httpx.Response(200, json=payload)))
        assert json.loads(client.run("m", {})["response"]) == payload["result"]["response"]

    def test_structured_intent_reaches_extractor(self):
        payload = {
            "result": {
                "response": {
                    "primaryAction": "create_task",
                    "confidence": 0.9,
                    "extractedTasks": [{"title": "Write report"}],
                    "actions": ["create_task"],
                }
            }
        }
        client = AIClient("https://ai", transport=_transport(lambda r: httpx.Response(200, json=payload)))
        intent = IntentExtractor(client).extract("add a task to write the report")
        assert intent.primary_action == PrimaryAction.CREATE_TASK
        assert [t.title for t in intent.extracted_tasks] == ["Write report"]

    def test_embed(self):
        client = AIClient(
            "https://ai",
            transport=_transport(lambda r: httpx.Response(200, json={"result": {"data": [[1, 2.5]]}})),
        )
        assert client.embed("text") == [1.0, 2.5]

    def test_embed_missing_data(self):
        client = AIClient("https://ai", transport=_transport(lambda r: httpx.Response(200, json={"result": {}})))
        with pytest.raises(AIError):
            client.embed("text")

    def test_retries_server_errors(self):
        calls = []
        responses = iter([httpx.Response(503), httpx.Response(200, json={"response": "ok"})])
        client = AIClient("https://ai", transport=_transport(lambda r: next(responses), calls))
        assert client.run("m", {})["response"] == "ok"
        assert len(calls) == 2

    def test_client_errors_are_not_retried(self):
        calls = []
        client = AIClient("https://ai", transport=_transport(lambda r: httpx.Response(401), calls))
        with pytest.raises(AIError):
            client.run("m", {})
        assert len(calls) == 1

    def test_reported_failure(self):
        client = AIClient(
            "https://ai",
            transport=_transport(lambda r: httpx.Response(200, json={"success": False, "result": None, "errors": ["bad"]})),
        )
        with pytest.raises(AIError, match="reported failure"):
            client.run("m", {})

    def test_non_json(self):
        client = AIClient("https://ai", transport=_transport(lambda r: httpx.Response(200, text="<html>")))
        with pytest.raises(AIError, match="Non-JSON"):
            client.run("m", {})


class TestVectorIndex:
    def test_query_sends_filter(self):
        calls = []
        index = VectorIndex(
            "https://vec.example.com",
            transport=_transport(
                lambda r: httpx.Response(200, json={"result": {"matches": [{"id": "t1", "score": 0.8}]}}), calls
            ),
        )
        result = index.query([0.1], top_k=5, filter={"userId": {"$eq": "alice"}})
        assert result == {"matches": [{"id": "t1", "score": 0.8}]}
        assert str(calls[0].url) == "https://vec.example.com/query"
        body = json.loads(calls[0].content)
        assert body["topK"] == 5
        assert body["filter"] == {"userId": {"$eq": "alice"}}

    def test_errors_are_wrapped(self):
        index = VectorIndex("https://vec", transport=_transport(lambda r: httpx.Response(500)))
        with pytest.raises(VectorIndexError):
            index.upsert([])

    def test_delete_by_ids(self):
        calls = []
        index = VectorIndex("https://vec", transport=_transport(lambda r: httpx.Response(200, json={}), calls))
        index.delete_by_ids(["t1"])
        assert json.loads(calls[0].content) == {"ids": ["t1"]}


def _notification(kind="deadline_urgent", data=None):
    return Notification(id="n1", user_id="alice", kind=kind, message="Due soon", data=data)


class TestSlack:
    def test_not_configured(self):
        with pytest.raises(slack_mod.SlackError):
            slack_mod.post_notification(None, "#c", _notification())

    def test_post_notification(self):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "123.4"}
        with patch("slack_sdk.WebClient", return_value=client):
            post = slack_mod.post_notification("xoxb", "#focus", _notification())
        assert (post.channel, post.ts, post.kind) == ("C1", "123.4", "deadline_urgent")
        kwargs = client.chat_postMessage.call_args.kwargs
        assert kwargs["channel"] == "#focus"
        assert kwargs["text"] == "Due soon"
        assert kwargs["blocks"][0]["text"]["text"].startswith(":rotating_light: *Deadline Urgent*")

    def test_format_notification(self):
        [block] = slack_mod.format_notification(_notification("workflow_error"))
        assert block["text"]["text"].startswith(":warning: *Workflow Error* for `alice`")

    def test_format_with_tasks(self):
        blocks = slack_mod.format_notification(_notification(data={"taskIds": ["a", "b"]}))
        assert blocks[1]["elements"][0]["text"] == "2 task(s) involved"
