import unittest
from unittest import mock

import requests

from analyzer.completion_client import (
    AzureCompletionService,
    CompletionError,
    LocalCompletionService,
    build_completion_service,
    complete,
    send_with_retries,
)


def chat_response(content: str = "ok", status: int = 200) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status
    response.headers = {}
    response.text = "" if status < 400 else "server unavailable"
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


class CompletionServiceTest(unittest.TestCase):
    def test_local_payload_and_separator(self) -> None:
        service = LocalCompletionService(url="http://localhost:1234/v1/chat/completions", timeout=5)
        with mock.patch("analyzer.completion_client.requests.post", return_value=chat_response("theme")) as post:
            result = complete("Find themes", "Question 1: hello", service)

        self.assertEqual(result, "theme")
        payload = post.call_args.kwargs["json"]
        self.assertEqual(payload["model"], "local-model")
        self.assertEqual(
            payload["messages"],
            [{"role": "user", "content": "Find themes\n\nText to analyze: Question 1: hello"}],
        )
        self.assertEqual(payload["temperature"], 0.7)
        self.assertEqual(payload["max_tokens"], 500)
        self.assertEqual(post.call_args.kwargs["timeout"], 5)

    def test_azure_endpoint_headers_and_system_prompt(self) -> None:
        service = AzureCompletionService(
            api_key="secret",
            base_url="https://xyz.openai.azure.com/",
            deployment="gpt-5-chat",
            api_version="2024-02-15-preview",
        )
        with mock.patch("analyzer.completion_client.requests.post", return_value=chat_response("done")) as post:
            self.assertEqual(service.complete("hello"), "done")

        self.assertEqual(
            post.call_args.args[0],
            "https://xyz.openai.azure.com/openai/deployments/gpt-5-chat/chat/completions"
            "?api-version=2024-02-15-preview",
        )
        self.assertEqual(post.call_args.kwargs["headers"]["api-key"], "secret")
        messages = post.call_args.kwargs["json"]["messages"]
        self.assertEqual(messages[0]["role"], "system")
        self.assertEqual(messages[1], {"role": "user", "content": "hello"})

    def test_azure_requires_credentials_at_call_time(self) -> None:
        service = build_completion_service(use_copilot=True, env={})
        with mock.patch("analyzer.completion_client.requests.post") as post:
            with self.assertRaises(CompletionError) as ctx:
                service.complete("hello")
        post.assert_not_called()
        self.assertIn("COPILOT_API_KEY", str(ctx.exception))

    def test_explicit_model_beats_environment_deployment(self) -> None:
        env = {"COPILOT_API_KEY": "k", "COPILOT_API_URL": "https://x", "COPILOT_DEPLOYMENT": "env-dep"}
        self.assertEqual(build_completion_service(use_copilot=True, env=env).deployment, "env-dep")
        self.assertEqual(
            build_completion_service(use_copilot=True, env=env, model="cli-dep").deployment,
            "cli-dep",
        )
        local = build_completion_service(use_copilot=False, env={"LM_STUDIO_URL": "http://lm:1/v1"})
        self.assertEqual(local.url, "http://lm:1/v1")
        self.assertEqual(local.timeout, 30.0)

    def test_http_error_message_includes_status_and_body(self) -> None:
        service = LocalCompletionService(timeout=1)
        with mock.patch("analyzer.completion_client.requests.post", return_value=chat_response(status=503)):
            with self.assertRaises(CompletionError) as ctx:
                service.complete("x")
        self.assertEqual(str(ctx.exception), "LM Studio API error: 503 - server unavailable")
        self.assertTrue(ctx.exception.retriable)

    def test_unexpected_shape(self) -> None:
        response = chat_response()
        response.json.return_value = {"error": "nope"}
        with mock.patch("analyzer.completion_client.requests.post", return_value=response):
            with self.assertRaises(CompletionError) as ctx:
                LocalCompletionService().complete("x")
        self.assertIn("Unexpected API response format", str(ctx.exception))

    def test_transient_failures_are_retried(self) -> None:
        service = LocalCompletionService(max_retries=3, retry_backoff=0)
        responses = [requests.ConnectionError("reset"), chat_response(status=429), chat_response("third")]
        with mock.patch("analyzer.completion_client.requests.post", side_effect=responses) as post:
            self.assertEqual(service.complete("x"), "third")
        self.assertEqual(post.call_count, 3)

    def test_non_retriable_error_is_raised_immediately(self) -> None:
        sleeps = []

        def send():
            raise CompletionError("bad request", retriable=False)

        with self.assertRaises(CompletionError):
            send_with_retries(send, max_retries=5, retry_backoff=1.0, sleep=sleeps.append)
        self.assertEqual(sleeps, [])

    def test_backoff_doubles(self) -> None:
        sleeps = []

        def send():
            raise CompletionError("timeout", retriable=True)

        with self.assertRaises(CompletionError):
            send_with_retries(send, max_retries=3, retry_backoff=1.5, sleep=sleeps.append)
        self.assertEqual(sleeps, [1.5, 3.0])


if __name__ == "__main__":
    unittest.main()
