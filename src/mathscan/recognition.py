"""
Recognition Client

Sends a math exercise image to the Gemini generateContent REST endpoint and
parses the structured exercise it returns. Content comes back raw; the batch
session runs it through the normalizer.
"""

import base64
import json
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .config import settings
from .models import AnalysisOptions, ExerciseResult, ImagePayload

logger = logging.getLogger(__name__)


class RecognitionError(Exception):
    """Raised when the recognition service cannot produce a result."""
    pass


class CredentialError(RecognitionError):
    """Raised when the API key is missing or rejected."""
    pass


class MalformedResponseError(RecognitionError):
    """Raised when the service answers with something that is not an exercise."""
    pass


EXERCISE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "title": {
            "type": "STRING",
            "description": (
                "A pedagogical title that summarizes the exercise's core concept. "
                "Concise (under 6 words) and clearly naming the exercise's topic."
            ),
        },
        "difficulty": {
            "type": "INTEGER",
            "description": "An estimated difficulty from 1 (very easy) to 5 (very hard).",
        },
        "keywords": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "A list of 3-5 relevant mathematical keywords.",
        },
        "content": {
            "type": "STRING",
            "description": (
                "The full content of the exercise as clean, semantic HTML with LaTeX for math. "
                "Use \\( ... \\) for inline math and \\[ ... \\] for display math. "
                "Use <p> for paragraphs and <ol>/<ul> for questions and sub-questions. "
                "Do not nest block elements inside <p> tags."
            ),
        },
    },
    "required": ["title", "difficulty", "keywords", "content"],
}

BASE_INSTRUCTIONS = (
    "You are an expert in mathematics education. Analyze the math exercise in the image "
    "and extract it into structured JSON, strictly following the provided schema.",
    "The 'content' field must contain ONLY the body of the exercise. Omit headers like "
    "'Exercise 1' or 'Problem A'; numbering is handled by the application.",
    "The 'title' MUST be a short pedagogical summary of the exercise's main objective "
    "(e.g. 'Solving Quadratic Equations'), under 6 words.",
    "Detect the language of the text in the image. The whole response (title, keywords, "
    "content) MUST be in that language. DO NOT TRANSLATE.",
    "The 'content' field must be valid, semantic HTML. Use <p> for paragraphs and nested "
    "<ol> or <ul> for lists. All math must be LaTeX, using \\( ... \\) inline and "
    "\\[ ... \\] for display math.",
    "For inline math containing complex structures such as fractions (\\frac), sums (\\sum) "
    "or integrals (\\int), start the formula with \\displaystyle. Do not do this for simple "
    "variables or expressions.",
    "For vectors use \\vec{u} for single letters and \\overrightarrow{AB} for several letters. "
    "Never use plain text arrows.",
    "Use LaTeX environments such as cases or aligned for systems of equations, pmatrix or "
    "bmatrix for matrices.",
    "Use \\left and \\right for delimiters around tall expressions so they scale correctly.",
)

REVISE_INSTRUCTION = (
    "Check the text for spelling and grammar errors and give a corrected version in "
    "'content'. Corrections must be subtle and preserve the original meaning."
)

EXACT_INSTRUCTION = (
    "Your transcription must be exact. DO NOT correct the original text, spelling or "
    "grammar. Preserve the original phrasing and vocabulary."
)

BOLD_KEYWORDS_INSTRUCTION = (
    "In the HTML 'content' field, wrap the keywords listed in 'keywords' in <strong> tags."
)

HINTS_INSTRUCTION = (
    "For each question or sub-question that requires a solution, append a brief hint in "
    "parentheses at the end of its text, e.g. '(Hint: consider factoring the quadratic.)'. "
    "Hints guide without giving the answer. Do not add hints to plain statements."
)

EXTRACT_PROMPT = "Extract the exercise from this image, conforming to the JSON schema."


def build_system_instruction(options: AnalysisOptions) -> str:
    """
    Assemble the system instruction for one run.

    Args:
        options: Analysis options shared by the run

    Returns:
        Instruction text sent with every image
    """
    instructions = list(BASE_INSTRUCTIONS)
    instructions.append(REVISE_INSTRUCTION if options.revise_text else EXACT_INSTRUCTION)
    if options.bold_keywords:
        instructions.append(BOLD_KEYWORDS_INSTRUCTION)
    if options.suggest_hints:
        instructions.append(HINTS_INSTRUCTION)
    return " ".join(instructions)


def _error_detail(response: httpx.Response) -> str:
    """Pull the human-readable message out of a Google API error body."""
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return response.text[:200]


def _is_credential_failure(response: httpx.Response) -> bool:
    if response.status_code in (401, 403):
        return True
    return response.status_code == 400 and "API_KEY" in response.text


class RecognitionClient:
    """
    Interface to the Gemini API for exercise recognition.

    Handles image encoding, API communication and result parsing. One
    httpx.Client is shared by all worker threads of a session.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize recognition client.

        Args:
            api_key: Gemini API key (default from settings)
            model: Model name (e.g., "gemini-2.5-flash")
            base_url: API base URL
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.model = model or settings.gemini_model
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.timeout = timeout or settings.request_timeout
        self.client = httpx.Client(timeout=self.timeout, transport=transport)

    def _headers(self, api_key: str) -> dict:
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    def _post(self, url: str, body: dict) -> dict:
        """
        POST to the API and decode the JSON body.

        Raises:
            CredentialError: On a rejected API key
            RecognitionError: On network, timeout or HTTP errors
            MalformedResponseError: If the body is not JSON
        """
        try:
            response = self.client.post(url, json=body, headers=self._headers(self.api_key))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            if _is_credential_failure(e.response):
                raise CredentialError(f"API key rejected: {detail}") from e
            logger.error(f"Recognition API error {e.response.status_code}: {detail}")
            raise RecognitionError(
                f"Recognition service returned HTTP {e.response.status_code}: {detail}"
            ) from e
        except httpx.TimeoutException as e:
            raise RecognitionError(f"Recognition request timed out after {self.timeout:.0f}s") from e
        except httpx.HTTPError as e:
            logger.error(f"Cannot reach recognition service at {self.base_url}: {e}")
            raise RecognitionError(f"Cannot reach recognition service: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError("Recognition service returned invalid JSON") from e

    def _parse_exercise(self, data: dict) -> ExerciseResult:
        """
        Parse the exercise JSON out of a generateContent response.

        Args:
            data: Decoded response body

        Returns:
            ExerciseResult with raw (not yet normalized) content
        """
        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError):
            reason = (data.get("promptFeedback") or {}).get("blockReason") if isinstance(data, dict) else None
            if reason:
                raise MalformedResponseError(f"Request blocked by the service: {reason}")
            raise MalformedResponseError("Response contained no candidate text")

        # Tolerate stray prose or code fences around the object
        start = text.find("{")
        end = text.rfind("}") + 1
        if start < 0 or end <= start:
            raise MalformedResponseError("No JSON object found in response")

        try:
            payload = json.loads(text[start:end])
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Invalid JSON structure received: {e}") from e

        if not isinstance(payload, dict):
            raise MalformedResponseError("Invalid JSON structure received: expected an object")

        try:
            return ExerciseResult.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            raise MalformedResponseError(f"Invalid exercise fields: {fields or 'unknown'}") from e

    def analyze(self, payload: ImagePayload, options: AnalysisOptions) -> ExerciseResult:
        """
        Recognize one exercise image.

        Args:
            payload: Image bytes and media type
            options: Analysis options shared by the run

        Returns:
            ExerciseResult with raw content

        Raises:
            CredentialError: If the API key is missing or rejected
            RecognitionError: On transport or service errors
            MalformedResponseError: If the response is not a valid exercise
        """
        if not self.api_key:
            raise CredentialError("API key is missing.")

        logger.info(
            f"Analyzing image with {self.model}: {payload.filename or 'unnamed'} "
            f"({payload.size_bytes / 1024:.0f} KB)"
        )

        body = {
            "systemInstruction": {"parts": [{"text": build_system_instruction(options)}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": payload.media_type,
                                "data": base64.b64encode(payload.data).decode("utf-8"),
                            }
                        },
                        {"text": EXTRACT_PROMPT},
                    ],
                }
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": EXERCISE_SCHEMA,
            },
        }

        data = self._post(f"{self.base_url}/models/{self.model}:generateContent", body)
        return self._parse_exercise(data)

    def verify_credential(self, api_key: Optional[str] = None) -> bool:
        """
        Check an API key with a lightweight model listing call.

        Args:
            api_key: Key to check (default: the client's key)

        Returns:
            True if the service accepts the key
        """
        key = self.api_key if api_key is None else api_key
        if not key:
            return False

        try:
            response = self.client.get(
                f"{self.base_url}/models",
                params={"pageSize": 1},
                headers=self._headers(key),
            )
        except httpx.HTTPError as e:
            logger.error(f"API key verification failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"API key verification rejected: HTTP {response.status_code}")
            return False
        return True

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __del__(self):
        """Clean up HTTP client."""
        if hasattr(self, "client"):
            self.client.close()
