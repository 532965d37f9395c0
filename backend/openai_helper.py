import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "openai/gpt-4o-mini"
SYSTEM_MESSAGE = "You are an expert educational content creator. Always return valid JSON arrays of problems."

GRADE_DESCRIPTIONS: Dict[str, str] = {
    "K": "Kindergarten (ages 5-6)",
    "1": "1st grade (ages 6-7)",
    "2": "2nd grade (ages 7-8)",
    "3": "3rd grade (ages 8-9)",
    "4": "4th grade (ages 9-10)",
    "5": "5th grade (ages 10-11)",
    "6": "6th grade (ages 11-12)",
    "7": "7th grade (ages 12-13)",
    "8": "8th grade (ages 13-14)",
    "9": "9th grade (ages 14-15)",
    "10": "10th grade (ages 15-16)",
    "11": "11th grade (ages 16-17)",
    "12": "12th grade (ages 17-18)",
    "College": "College/University level",
    "Adult": "Adult education level",
}

SUBJECT_GUIDELINES: Dict[str, str] = {
    "Math": "Focus on numerical problems, equations, word problems, and mathematical concepts",
    "Science": "Include experiments, scientific concepts, hypotheses, and analytical questions",
    "English": "Grammar, vocabulary, reading comprehension, and writing exercises",
    "History": "Historical events, dates, cause-and-effect, and critical analysis",
    "Geography": "Maps, locations, physical features, cultures, and spatial relationships",
    "Language": "Foreign language vocabulary, grammar, translation, and conversation",
    "Computer Science": "Programming concepts, algorithms, logic, and problem-solving",
    "Social Studies": "Society, culture, government, and civic concepts",
    "Biology": "Living organisms, cells, ecosystems, and life processes",
    "Chemistry": "Chemical reactions, elements, compounds, and molecular structures",
    "Physics": "Forces, motion, energy, waves, and physical phenomena",
    "Writing": "Creative writing, essay structure, and composition skills",
    "General": "Mixed topics across various subjects",
}

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_JSON_BLOCK = re.compile(r"\[[\s\S]*\]|\{[\s\S]*\}")


class WorksheetGenerationError(Exception):
    pass


class WorksheetClient(Protocol):
    model: str

    async def generate_problems(
        self,
        subject: str,
        grade: str,
        count: int,
        topics: Optional[List[str]] = None,
        difficulty: str = "medium",
        custom_request: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...


def _topic_list(subject: str, topics: Optional[List[str]]) -> str:
    cleaned = [t.strip() for t in (topics or []) if t and t.strip()]
    if cleaned:
        return ", ".join(cleaned)
    return f"various {subject.lower()} topics"


def build_worksheet_prompt(
    subject: str,
    grade: str,
    count: int,
    topics: Optional[List[str]] = None,
    difficulty: str = "medium",
    custom_request: Optional[str] = None,
) -> str:
    grade_text = GRADE_DESCRIPTIONS.get(grade, grade)
    guideline = SUBJECT_GUIDELINES.get(subject, "")
    schema = (
        "Return ONLY a valid JSON array with this exact structure:\n"
        "[\n"
        "  {\n"
        '    "question": "The problem statement",\n'
        '    "options": ["Option A", "Option B", "Option C", "Option D"],\n'
        '    "correctAnswer": "The correct option exactly as it appears in options",\n'
        '    "explanation": "Brief explanation of why this is correct",\n'
        '    "type": "multiple-choice",\n'
        '    "topic": "Specific topic",\n'
        f'    "difficulty": "{difficulty}"\n'
        "  }\n"
        "]"
    )
    if custom_request:
        lines = [
            f"You are an expert educational content creator. Based on this request, generate {count} educational problems:",
            "",
            f'Request: "{custom_request}"',
            f"Subject: {subject}",
            f"Grade Level: {grade} ({grade_text})",
        ]
        if topics:
            lines.append(f"Topics: {_topic_list(subject, topics)}")
        lines.append(f"Difficulty: {difficulty}")
        lines.extend(
            [
                "",
                guideline,
                "",
                "IMPORTANT:",
                f"- Generate EXACTLY {count} problems",
                "- Each problem should be appropriate for the grade level",
                "- Include variety in problem types",
                "- Make problems engaging and educational",
                "",
                schema,
            ]
        )
        return "\n".join(lines)

    return "\n".join(
        [
            f"You are an expert {subject} educator. Generate exactly {count} {difficulty} difficulty "
            f"{subject} problems for {grade_text} students.",
            "",
            f"Topics to cover: {_topic_list(subject, topics)}",
            "",
            guideline,
            "",
            "Requirements:",
            f"1. Generate EXACTLY {count} multiple-choice problems",
            f"2. Each problem must be appropriate for {grade} grade level",
            "3. Include 4 options for each problem",
            "4. Ensure problems are educational and engaging",
            "5. Vary the problem types and scenarios",
            "",
            schema,
        ]
    )


def _strip_fences(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = _FENCE_OPEN.sub("", text)
        text = _FENCE_CLOSE.sub("", text)
    return text.strip()


def parse_problems(content: str) -> List[Dict[str, Any]]:
    text = _strip_fences(content or "")
    try:
        parsed: Any = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_BLOCK.search(text)
        if not match:
            raise WorksheetGenerationError("Invalid JSON response from AI")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise WorksheetGenerationError("Invalid JSON response from AI") from exc

    if isinstance(parsed, list):
        return [p for p in parsed if isinstance(p, dict)]
    if isinstance(parsed, dict):
        if isinstance(parsed.get("problems"), list):
            return [p for p in parsed["problems"] if isinstance(p, dict)]
        if "0" in parsed:
            return [p for p in parsed.values() if isinstance(p, dict)]
        if parsed.get("question"):
            return [parsed]
    logger.error("Unexpected AI response format: %s", str(parsed)[:200])
    return []


def normalize_problems(
    problems: List[Dict[str, Any]],
    subject: str,
    topics: Optional[List[str]] = None,
    difficulty: str = "medium",
) -> List[Dict[str, Any]]:
    normalized: List[Dict[str, Any]] = []
    fallback_topic = _topic_list(subject, topics)
    for index, problem in enumerate(problems):
        options = problem.get("options") or problem.get("choices")
        if not problem.get("question") or not options:
            logger.warning("Dropping generated problem %s: missing question or options", index + 1)
            continue
        options = [str(option) for option in options]
        answer = problem.get("correctAnswer", problem.get("answer"))
        answer = options[0] if answer is None else str(answer)
        if answer not in options:
            logger.warning("Answer not in options for problem %s, using first option", index + 1)
            answer = options[0]
        normalized.append(
            {
                "question": str(problem["question"]),
                "options": options,
                "answer": answer,
                "user_answer": None,
                "is_correct": None,
                "explanation": problem.get("explanation") or "No explanation provided",
                "type": problem.get("type") or "multiple-choice",
                "topic": problem.get("topic") or fallback_topic,
                "difficulty": problem.get("difficulty") or difficulty,
                "hints": problem.get("hints") or [],
                "time_spent": 0,
            }
        )
    return normalized


class OpenRouterWorksheetClient:
    """OpenAI-compatible chat completion client; one attempt per call."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        top_p: float = 1.0,
        timeout_seconds: float = 60.0,
        referer: str = "https://brainybees.org",
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.top_p = top_p
        self.timeout_seconds = timeout_seconds
        self.referer = referer

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": "BrainyBees Educational Platform",
        }

    async def complete(self, prompt: str, system_message: str = SYSTEM_MESSAGE) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": system_message},
                            {"role": "user", "content": prompt},
                        ],
                        "temperature": self.temperature,
                        "max_tokens": self.max_tokens,
                        "top_p": self.top_p,
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            body = e.response.text[:300] if e.response is not None else str(e)
            raise WorksheetGenerationError(f"AI provider returned HTTP {status}: {body}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise WorksheetGenerationError(f"AI provider request failed: {e}") from e

        if not isinstance(data, dict):
            raise WorksheetGenerationError("AI provider returned an unexpected response body")
        usage = data.get("usage") or {}
        if usage:
            logger.info(
                "llm_usage model=%s prompt_tokens=%s completion_tokens=%s",
                self.model,
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
            )
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise WorksheetGenerationError("AI provider response missing message content") from e

    async def generate_problems(
        self,
        subject: str,
        grade: str,
        count: int,
        topics: Optional[List[str]] = None,
        difficulty: str = "medium",
        custom_request: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        prompt = build_worksheet_prompt(subject, grade, count, topics, difficulty, custom_request)
        logger.info("llm_generate subject=%s grade=%s count=%s model=%s", subject, grade, count, self.model)
        content = await self.complete(prompt)
        problems = normalize_problems(parse_problems(content), subject, topics, difficulty)
        if not problems:
            raise WorksheetGenerationError("All generated problems failed validation")
        return problems

    async def list_models(self) -> List[Dict[str, Any]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(f"{self.base_url}/models", headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise WorksheetGenerationError(f"Model listing failed: {e}") from e

        models: List[Dict[str, Any]] = []
        for item in data.get("data", []):
            pricing = item.get("pricing") or {}
            models.append(
                {
                    "id": item.get("id"),
                    "name": item.get("name") or item.get("id"),
                    "pricing": {
                        "prompt": float(pricing.get("prompt") or 0),
                        "completion": float(pricing.get("completion") or 0),
                    },
                    "context_length": item.get("context_length"),
                    "description": (item.get("description") or "")[:300],
                }
            )
        return models


def build_worksheet_client(
    api_key: Optional[str],
    settings: Optional[Dict[str, Any]] = None,
    default_model: str = DEFAULT_MODEL,
    default_base_url: str = DEFAULT_BASE_URL,
    timeout_seconds: float = 60.0,
    referer: str = "https://brainybees.org",
) -> OpenRouterWorksheetClient:
    if not api_key:
        raise WorksheetGenerationError("OPENROUTER_API_KEY or OPENAI_API_KEY is required for worksheet generation")
    settings = settings or {}
    model_config = settings.get("model_config") or {}
    return OpenRouterWorksheetClient(
        api_key=api_key,
        model=settings.get("selected_model") or default_model,
        base_url=settings.get("base_url") or default_base_url,
        temperature=float(model_config.get("temperature", 0.7)),
        max_tokens=int(model_config.get("max_tokens", 2000)),
        top_p=float(model_config.get("top_p", 1.0)),
        timeout_seconds=timeout_seconds,
        referer=referer,
    )
