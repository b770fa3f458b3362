"""Unit tests for the OpenAI Responses client."""

from __future__ import annotations

import json
import os
import sys
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from botocore.exceptions import ClientError

from rollmodel_shared import openai_client
from rollmodel_shared.http_utils import ApiError

ACTION_PACK = {
    "wins": ["escaped side control"],
    "leaks": [],
    "oneFocus": "elbow-knee connection",
    "drills": [],
    "positionalRequests": [],
    "fallbackDecisionGuidance": "",
    "confidenceFlags": [],
}


def _reply(**overrides):
    reply = {
        "text": "Nice work on the escapes.",
        "extracted_updates": {
            "summary": "Escapes improving",
            "actionPack": ACTION_PACK,
            "suggestedFollowUpQuestions": ["Which escape felt best?"],
        },
        "suggested_prompts": ["Plan next session"],
    }
    reply.update(overrides)
    return reply


def _envelope(text):
    return {"output": [{"type": "message", "content": [{"type": "output_text", "text": text}]}]}


def _urlopen_returning(payload):
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode("utf-8")
    opener = MagicMock()
    opener.return_value.__enter__.return_value = resp
    return opener


def _urlopen_timing_out_on_read():
    resp = MagicMock()
    resp.read.side_effect = TimeoutError("The read operation timed out")
    opener = MagicMock()
    opener.return_value.__enter__.return_value = resp
    return opener


class _Ssm:
    def __init__(self, value=None, error=None):
        self.value = value
        self.error = error
        self.calls = 0

    def get_parameter(self, Name, WithDecryption):
        self.calls += 1
        if self.error:
            raise self.error
        return {"Parameter": {"Value": self.value}}


class OpenAIClientTests(unittest.TestCase):
    def setUp(self):
        openai_client.reset_api_key_cache()
        self.addCleanup(openai_client.reset_api_key_cache)
        self.ssm = _Ssm(value="sk-test")
        patcher = patch.object(openai_client, "_get_ssm", return_value=self.ssm)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_api_key_is_cached(self):
        self.assertEqual(openai_client.get_openai_api_key(), "sk-test")
        self.assertEqual(openai_client.get_openai_api_key(), "sk-test")
        self.assertEqual(self.ssm.calls, 1)

    def test_missing_parameter_is_configuration_error(self):
        self.ssm.error = ClientError({"Error": {"Code": "ParameterNotFound", "Message": "nope"}}, "GetParameter")
        with self.assertRaises(ApiError) as caught:
            openai_client.get_openai_api_key()
        self.assertEqual(caught.exception.code, "CONFIGURATION_ERROR")
        self.assertEqual(caught.exception.status_code, 500)

    def test_other_ssm_errors_propagate(self):
        self.ssm.error = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "GetParameter")
        with self.assertRaises(ClientError):
            openai_client.get_openai_api_key()

    def test_call_returns_validated_reply(self):
        opener = _urlopen_returning(_envelope(json.dumps(_reply())))
        with patch.object(openai_client.urllib.request, "urlopen", opener):
            result = openai_client.call_openai([{"role": "user", "content": "How did I do?"}])

        self.assertEqual(result["text"], "Nice work on the escapes.")
        self.assertEqual(result["suggested_prompts"], ["Plan next session"])
        request = opener.call_args[0][0]
        self.assertTrue(request.full_url.endswith("/v1/responses"))
        self.assertEqual(request.get_header("Authorization"), "Bearer sk-test")
        sent = json.loads(request.data)
        self.assertEqual(sent["input"][0]["content"][0]["text"], "How did I do?")

    def test_output_text_shortcut(self):
        opener = _urlopen_returning({"output_text": json.dumps(_reply())})
        with patch.object(openai_client.urllib.request, "urlopen", opener):
            result = openai_client.call_openai([{"role": "user", "content": "hi"}])
        self.assertEqual(result["extracted_updates"]["summary"], "Escapes improving")

    def test_session_review_is_normalized(self):
        updates = dict(_reply()["extracted_updates"])
        updates["sessionReview"] = {"promptSet": {"whatWorked": ["frames"]}, "oneThing": "  Frame first. Then hip out"}
        opener = _urlopen_returning({"output_text": json.dumps(_reply(extracted_updates=updates))})
        with patch.object(openai_client.urllib.request, "urlopen", opener):
            result = openai_client.call_openai([{"role": "user", "content": "hi"}])
        self.assertEqual(result["extracted_updates"]["sessionReview"]["oneThing"], "Frame first")

    def test_provider_failures(self):
        cases = [
            (_urlopen_returning({"output": []}), "AI provider returned an empty response."),
            (_urlopen_returning({"output_text": "not json"}), "AI provider response could not be parsed."),
            (_urlopen_returning({"output_text": json.dumps(_reply(text=5))}), "AI response format was invalid."),
            (
                MagicMock(side_effect=urllib.error.HTTPError("https://x", 429, "slow down", {}, None)),
                "Failed to generate assistant response.",
            ),
            (MagicMock(side_effect=urllib.error.URLError("timeout")), "Failed to generate assistant response."),
            (MagicMock(side_effect=TimeoutError("timed out")), "Failed to generate assistant response."),
            (_urlopen_timing_out_on_read(), "Failed to generate assistant response."),
        ]
        for opener, message in cases:
            with self.subTest(message=message):
                with patch.object(openai_client.urllib.request, "urlopen", opener):
                    with self.assertRaises(ApiError) as caught:
                        openai_client.call_openai([{"role": "user", "content": "hi"}])
                self.assertEqual(caught.exception.code, "AI_PROVIDER_ERROR")
                self.assertEqual(caught.exception.status_code, 502)
                self.assertEqual(caught.exception.message, message)


if __name__ == "__main__":
    unittest.main()
