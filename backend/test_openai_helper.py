import unittest
from unittest.mock import AsyncMock, patch

import httpx

import openai_helper
from openai_helper import OpenRouterWorksheetClient, WorksheetGenerationError


RAW_PROBLEM = {
    "question": "What is 6 x 7?",
    "options": [40, 42, 44, 48],
    "correctAnswer": 42,
    "explanation": "Six sevens are forty-two",
    "topic": "multiplication",
}


class TestPrompt(unittest.TestCase):
    def test_standard_prompt_mentions_grade_and_count(self):
        prompt = openai_helper.build_worksheet_prompt("Math", "3", 5, ["fractions"], "easy")
        self.assertIn("Generate EXACTLY 5 multiple-choice problems", prompt)
        self.assertIn("3rd grade (ages 8-9)", prompt)
        self.assertIn("fractions", prompt)

    def test_custom_request_is_quoted(self):
        prompt = openai_helper.build_worksheet_prompt("Science", "7", 3, custom_request="volcanoes for a 12 year old")
        self.assertIn('Request: "volcanoes for a 12 year old"', prompt)
        self.assertNotIn("Topics:", prompt)


class TestParsing(unittest.TestCase):
    def test_parses_fenced_array(self):
        content = '```json\n[{"question": "q", "options": ["a"]}]\n```'
        self.assertEqual(openai_helper.parse_problems(content), [{"question": "q", "options": ["a"]}])

    def test_parses_problems_wrapper(self):
        content = 'Sure! {"problems": [{"question": "q"}]}'
        self.assertEqual(openai_helper.parse_problems(content), [{"question": "q"}])

    def test_invalid_json_raises(self):
        with self.assertRaises(WorksheetGenerationError):
            openai_helper.parse_problems("no json here")

    def test_normalize_stringifies_numeric_answers(self):
        problems = openai_helper.normalize_problems([RAW_PROBLEM], "Math")
        self.assertEqual(problems[0]["options"], ["40", "42", "44", "48"])
        self.assertEqual(problems[0]["answer"], "42")
        self.assertIsNone(problems[0]["user_answer"])

    def test_normalize_drops_incomplete_and_fixes_answer(self):
        problems = openai_helper.normalize_problems(
            [{"question": "no options"}, {"question": "q", "options": ["a", "b"], "correctAnswer": "z"}],
            "Math",
            difficulty="hard",
        )
        self.assertEqual(len(problems), 1)
        self.assertEqual(problems[0]["answer"], "a")
        self.assertEqual(problems[0]["difficulty"], "hard")
        self.assertEqual(problems[0]["topic"], "various math topics")


class TestClient(unittest.IsolatedAsyncioTestCase):
    async def test_generate_problems_normalizes_completion(self):
        client = OpenRouterWorksheetClient(api_key="key")
        with patch.object(OpenRouterWorksheetClient, "complete", AsyncMock(return_value='[{"question": "q", "options": ["1", "2"], "correctAnswer": "2"}]')):
            problems = await client.generate_problems("Math", "2", 1)
        self.assertEqual(problems[0]["answer"], "2")

    async def test_generate_problems_rejects_empty_result(self):
        client = OpenRouterWorksheetClient(api_key="key")
        with patch.object(OpenRouterWorksheetClient, "complete", AsyncMock(return_value='[{"question": "q"}]')):
            with self.assertRaises(WorksheetGenerationError):
                await client.generate_problems("Math", "2", 1)

    async def test_non_object_body_is_a_generation_error(self):
        real_client = httpx.AsyncClient
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[1, 2]))
        client = OpenRouterWorksheetClient(api_key="key")
        with patch.object(openai_helper.httpx, "AsyncClient", side_effect=lambda **kw: real_client(transport=transport, **kw)):
            with self.assertRaises(WorksheetGenerationError):
                await client.complete("Make a worksheet")

    async def test_complete_returns_message_content(self):
        real_client = httpx.AsyncClient
        body = {"choices": [{"message": {"content": "[]"}}], "usage": {"prompt_tokens": 5, "completion_tokens": 2}}
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))
        client = OpenRouterWorksheetClient(api_key="key")
        with patch.object(openai_helper.httpx, "AsyncClient", side_effect=lambda **kw: real_client(transport=transport, **kw)):
            self.assertEqual(await client.complete("Make a worksheet"), "[]")

    def test_builder_requires_key(self):
        with self.assertRaises(WorksheetGenerationError):
            openai_helper.build_worksheet_client(None)

    def test_builder_applies_settings(self):
        client = openai_helper.build_worksheet_client(
            "key",
            {"selected_model": "openai/gpt-4o", "base_url": "https://llm.local/v1/", "model_config": {"temperature": 0.2}},
        )
        self.assertEqual(client.model, "openai/gpt-4o")
        self.assertEqual(client.base_url, "https://llm.local/v1")
        self.assertEqual(client.temperature, 0.2)
        self.assertEqual(client.max_tokens, 2000)


if __name__ == "__main__":
    unittest.main()
