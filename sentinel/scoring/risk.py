"""Risk scoring for logged language-model calls.

Scoring breakdown (summed, then clamped to 0-100):
  - prompt length > 5000 chars: +10
  - response length > 10000 chars: +10
  - sensitive keyword matches across prompt + response: +20 each, capped at +40
  - token count > 4000: +15
  - error present: +25
  - model-family adjustment: -2 .. +3 (0 for unknown models)

Pure and deterministic: no I/O, no failure mode.  Input validation
(non-negative tokens and so on) belongs to the caller.
"""

import re

from typing_extensions import TypedDict

MIN_SCORE = 0
MAX_SCORE = 100

PROMPT_LENGTH_THRESHOLD = 5000
RESPONSE_LENGTH_THRESHOLD = 10000
TOKEN_COUNT_THRESHOLD = 4000

PROMPT_LENGTH_WEIGHT = 10
RESPONSE_LENGTH_WEIGHT = 10
KEYWORD_WEIGHT = 20
KEYWORD_CAP = 40
TOKEN_COUNT_WEIGHT = 15
ERROR_WEIGHT = 25

SENSITIVE_KEYWORDS: tuple[str, ...] = (
    # Security / exploitation
    "exploit", "vulnerability", "malware", "ransomware", "backdoor", "injection",
    "sql injection", "xss", "csrf", "ddos", "brute force", "password crack",
    "hack", "breach", "unauthorized access", "privilege escalation",
    # Self-harm / violence / illicit
    "bomb", "weapon", "kill", "murder", "suicide", "self-harm", "abuse",
    "violence", "illegal", "drug", "cocaine", "heroin", "methamphetamine",
    # Fraud
    "phishing", "scam", "fraud", "money laundering", "counterfeit",
    "credit card fraud", "identity theft", "ponzi", "pyramid scheme",
    # Privacy violations
    "doxxing", "stalking", "harassment", "blackmail", "extortion",
    "private information", "personal data", "ssn", "social security",
    # Discriminatory speech
    "racist", "sexist", "hate speech", "discrimination", "bigotry",
)  # fmt: skip

# Keyed by model family; exact match wins, then the first substring match.
MODEL_RISK_ADJUSTMENTS: dict[str, int] = {
    "gpt-4": 0,
    "gpt-4-turbo": 0,
    "gpt-3.5-turbo": 2,
    "o3-mini": -2,
    "claude-3": -1,
    "llama-2": 3,
}

_KEYWORD_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE) for keyword in SENSITIVE_KEYWORDS
)


class RiskScoreBreakdown(TypedDict):
    prompt_length_score: int
    response_length_score: int
    keyword_matches: int
    keyword_score: int
    token_score: int
    error_score: int
    model_adjustment: int
    final_score: int


def count_sensitive_keywords(text: str) -> int:
    """Count word-boundary keyword matches in ``text`` (every occurrence counts)."""
    return sum(len(pattern.findall(text)) for pattern in _KEYWORD_PATTERNS)


def get_model_adjustment(model: str) -> int:
    normalized = model.lower()
    if normalized in MODEL_RISK_ADJUSTMENTS:
        return MODEL_RISK_ADJUSTMENTS[normalized]
    for family, adjustment in MODEL_RISK_ADJUSTMENTS.items():
        if family in normalized:
            return adjustment
    return 0


def calculate_risk_score(
    prompt: str,
    response: str,
    model: str,
    tokens: int = 0,
    has_error: bool = False,
) -> RiskScoreBreakdown:
    """Score one telemetry record and return every contributing term."""
    prompt_length_score = PROMPT_LENGTH_WEIGHT if len(prompt) > PROMPT_LENGTH_THRESHOLD else 0
    response_length_score = RESPONSE_LENGTH_WEIGHT if len(response) > RESPONSE_LENGTH_THRESHOLD else 0

    matches = count_sensitive_keywords(prompt) + count_sensitive_keywords(response)
    keyword_score = min(matches * KEYWORD_WEIGHT, KEYWORD_CAP)

    token_score = TOKEN_COUNT_WEIGHT if tokens > TOKEN_COUNT_THRESHOLD else 0
    error_score = ERROR_WEIGHT if has_error else 0
    model_adjustment = get_model_adjustment(model)

    total = (
        prompt_length_score
        + response_length_score
        + keyword_score
        + token_score
        + error_score
        + model_adjustment
    )

    return RiskScoreBreakdown(
        prompt_length_score=prompt_length_score,
        response_length_score=response_length_score,
        keyword_matches=matches,
        keyword_score=keyword_score,
        token_score=token_score,
        error_score=error_score,
        model_adjustment=model_adjustment,
        final_score=max(MIN_SCORE, min(MAX_SCORE, total)),
    )


def get_risk_score(
    prompt: str,
    response: str,
    model: str,
    tokens: int = 0,
    has_error: bool = False,
) -> int:
    """Final 0-100 score only."""
    return calculate_risk_score(prompt, response, model, tokens, has_error)["final_score"]
