"""
Safety guard for incoming queries and assembled prompts.

Deterministic pattern matching in three strictness tiers. Every tier blocks
direct instruction-override phrasings; moderate adds role manipulation and
system-prompt extraction; strict adds obfuscation and flooding heuristics
and blocks code-generation requests by default. Pattern lists are plain
data so deployments can tune them.
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from models.prompt import PromptEnvelope
from models.results import ScreenResult
from services.errors import InvalidConfigError
from config import BLOCK_CODE_REQUESTS, MAX_QUERY_LENGTH, SAFETY_LEVEL

logger = logging.getLogger(__name__)

STRICT = "strict"
MODERATE = "moderate"
RELAXED = "relaxed"

INSTRUCTION_PATTERNS = (
    r"\b(?:ignore|forget|disregard|override)\s+(?:all\s+)?(?:of\s+)?(?:the\s+)?(?:previous|prior|above|earlier|your|these|those)\s+(?:\w+\s+)?(?:instructions?|prompts?|rules?|guidelines?|directions?)",
    r"\bnew\s+instructions?\s*:",
    r"\b(?:jailbreak|jailbroken)\b",
    r"\bdo\s+anything\s+now\b",
    r"\b(?:enable|activate|enter)\s+(?:developer|debug|god|admin)\s+mode\b",
    r"\b(?:bypass|override|disable)\s+(?:your\s+|the\s+|all\s+)?(?:safety|content|security)\s+(?:filters?|rules?|guidelines?|settings?|restrictions?)",
)

ROLE_PATTERNS = (
    r"\byou\s+are\s+(?:now|no\s+longer)\b",
    r"\bpretend\s+(?:to\s+be|you\s+are|that\s+you)\b",
    r"\bact\s+as\s+(?:if\s+you\s+(?:are|were)\s+)?(?:an?\s+)?(?:unrestricted|unfiltered|uncensored|different|evil|rogue)\b",
    r"\b(?:roleplay|role-play)\s+as\b",
    r"\bfrom\s+now\s+on,?\s+you\b",
)

SYSTEM_PATTERNS = (
    r"\b(?:reveal|show|print|display|repeat|output|tell\s+me|what\s+(?:is|are))\s+(?:me\s+)?(?:your|the)\s+(?:system\s+prompt|initial\s+prompt|hidden\s+instructions?|original\s+instructions?|instructions)\b",
    r"\bsystem\s+prompt\b",
    r"\bhidden\s+instructions?\b",
    r"<\|?(?:system|im_start|im_end)\|?>",
    r"^\s*(?:system|assistant)\s*:",
)

CODE_PATTERNS = (
    r"\b(?:write|generate|create|build|code)\b.{0,40}\b(?:script|program|source\s+code|function|snippet|malware|keylogger)\b",
    r"\b(?:python|javascript|js|php|bash|shell|sql|java|ruby|powershell|c\+\+)\s+(?:code|script|snippet|command|program)\b",
    r"```",
    r"\b(?:eval|exec)\s*\(",
    r"<script\b",
    r"\bimport\s+(?:os|sys|subprocess)\b",
    r"\b(?:drop\s+table|union\s+select|insert\s+into|delete\s+from)\b",
)

OBFUSCATION_PATTERNS = (
    r"[\u200b-\u200f\u2060\ufeff]",
    r"[A-Za-z0-9+/]{60,}={0,2}",
    r"(?:\\x[0-9a-fA-F]{2}){4,}",
    r"\b(?:1gn0r3|pr0mpt|syst3m|j41lbr34k)\b",
)

ABUSE_PATTERNS = {
    # Bare words only, so "cracked" in a damage report does not match
    STRICT: (
        r"\b(?:hack|exploit|crack|pirate)\b",
        r"\b(?:porn|adult|xxx)\b",
        r"\b(?:spam|scam|phishing)\b",
    ),
    MODERATE: (
        r"\b(?:hack|exploit|crack)\b",
        r"\b(?:porn|xxx)\b",
    ),
    RELAXED: (
        r"\b(?:hack|exploit)\b",
    ),
}

REPETITION_PATTERN = r"(.{3,20}?)\1{5,}"
NON_ASCII_LIMIT = 0.3

SEVERITY_WEIGHTS = {"low": 1, "medium": 2, "high": 4, "critical": 8}
RISK_LEVELS = ("safe", "low", "medium", "high", "critical")

# Severity per finding category
CATEGORY_SEVERITY = {
    "prompt_injection": "critical",
    "system_extraction": "high",
    "role_manipulation": "medium",
    "code_request": "medium",
    "abusive_content": "high",
    "obfuscation": "medium",
    "repetition_flood": "low",
}

CATEGORY_REASONS = {
    "prompt_injection": "prompt_injection",
    "system_extraction": "prompt_injection",
    "role_manipulation": "prompt_injection",
    "code_request": "code_request",
    "abusive_content": "abusive_content",
    "obfuscation": "obfuscation",
    "repetition_flood": "repetition_flood",
}

REFUSALS = {
    "code_request": (
        "I can't help with writing code, but I'm happy to answer questions about "
        "our products, orders, shipping or store policies."
    ),
    "excessive_length": "That message is a bit too long for me. Could you shorten your question?",
    "empty_query": "What would you like to know? I'm happy to help with questions about our store.",
}
DEFAULT_REFUSAL = (
    "I'm sorry, but I can't help with that request. I'm here to help with questions "
    "about our products, orders, shipping and store policies."
)


@dataclass(frozen=True)
class SafetyPatterns:
    """Pattern lists and switches for one strictness tier."""
    instruction: Tuple[str, ...] = INSTRUCTION_PATTERNS
    role: Tuple[str, ...] = ()
    system: Tuple[str, ...] = ()
    code: Tuple[str, ...] = CODE_PATTERNS
    obfuscation: Tuple[str, ...] = ()
    abuse: Tuple[str, ...] = ()
    check_flooding: bool = False
    block_code_requests: bool = False


TIER_DEFAULTS: Dict[str, SafetyPatterns] = {
    STRICT: SafetyPatterns(
        role=ROLE_PATTERNS,
        system=SYSTEM_PATTERNS,
        obfuscation=OBFUSCATION_PATTERNS,
        abuse=ABUSE_PATTERNS[STRICT],
        check_flooding=True,
        block_code_requests=True,
    ),
    MODERATE: SafetyPatterns(
        role=ROLE_PATTERNS,
        system=SYSTEM_PATTERNS,
        abuse=ABUSE_PATTERNS[MODERATE],
    ),
    RELAXED: SafetyPatterns(
        abuse=ABUSE_PATTERNS[RELAXED],
    ),
}


@dataclass
class _Finding:
    category: str
    pattern: str


def _compile(patterns: Sequence[str]) -> List[Pattern]:
    return [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns]


def refusal_message(reason: Optional[str]) -> str:
    """Neutral refusal text for a block reason."""
    return REFUSALS.get(reason, DEFAULT_REFUSAL)


class SafetyGuard:
    """Screens user queries and prompt envelopes before generation."""

    def __init__(
        self,
        level: str = SAFETY_LEVEL,
        block_code_requests: Optional[bool] = None,
        max_query_length: int = MAX_QUERY_LENGTH,
        patterns: Optional[SafetyPatterns] = None,
    ):
        """
        Initialize the guard.

        Args:
            level: strict, moderate or relaxed
            block_code_requests: Override the tier's code-request switch
            max_query_length: Longer queries are refused in every tier
            patterns: Custom pattern lists replacing the tier defaults
        """
        if level not in TIER_DEFAULTS:
            raise InvalidConfigError(f"Unknown safety level '{level}', expected one of {sorted(TIER_DEFAULTS)}")

        if block_code_requests is None and BLOCK_CODE_REQUESTS is not None:
            block_code_requests = BLOCK_CODE_REQUESTS.strip().lower() in ("1", "true", "yes", "on")

        self.level = level
        self.patterns = patterns or TIER_DEFAULTS[level]
        self.block_code_requests = (
            self.patterns.block_code_requests if block_code_requests is None else block_code_requests
        )
        self.max_query_length = max_query_length

        # Checked in order; the first finding is the reported reason
        self._checks = [
            ("prompt_injection", _compile(self.patterns.instruction)),
            ("system_extraction", _compile(self.patterns.system)),
            ("role_manipulation", _compile(self.patterns.role)),
            ("code_request", _compile(self.patterns.code) if self.block_code_requests else []),
            ("abusive_content", _compile(self.patterns.abuse)),
            ("obfuscation", _compile(self.patterns.obfuscation)),
        ]
        self._injection_checks = self._checks[:3]
        self._repetition = re.compile(REPETITION_PATTERN, re.DOTALL)

        logger.info(f"Initialized SafetyGuard: level={level}, block_code_requests={self.block_code_requests}")

    def screen_query(self, text: str) -> ScreenResult:
        """
        Screen a shopper's query.

        Returns:
            ScreenResult; `allowed` is False with a reason code when blocked
        """
        if not text or not text.strip():
            return self._blocked("empty_query", "validation", [], "low")
        if len(text) > self.max_query_length:
            return self._blocked("excessive_length", "validation", [f"length>{self.max_query_length}"], "medium")

        findings = self._scan(text, self._checks)
        if self.patterns.check_flooding:
            findings.extend(self._flooding(text))

        if not findings:
            return ScreenResult(allowed=True)

        first = findings[0]
        risk_level, confidence = self.assess(findings)
        return self._blocked(
            CATEGORY_REASONS[first.category],
            first.category,
            [f"{f.category}:{f.pattern}" for f in findings],
            risk_level,
            confidence,
        )

    def screen_prompt(self, envelope: PromptEnvelope) -> ScreenResult:
        """
        Screen an assembled prompt.

        The user query is screened again; each context chunk is checked for
        embedded instructions only, since store text legitimately mentions
        words on the abuse denylist.
        """
        query_result = self.screen_query(envelope.user_query)
        if not query_result.allowed:
            return query_result

        flagged = []
        matched = []
        for index, text in enumerate(envelope.context_chunks):
            findings = self._scan(text, self._injection_checks)
            if findings:
                flagged.append(index)
                matched.extend(f"chunk[{index}]:{f.category}" for f in findings)

        if not flagged:
            return ScreenResult(allowed=True)

        result = self._blocked("context_injection", "prompt_injection", matched, "high")
        result.flagged_chunks = flagged
        return result

    @staticmethod
    def assess(findings: Sequence[_Finding]) -> Tuple[str, float]:
        """Risk level and confidence from the findings' severities."""
        if not findings:
            return "safe", 0.0
        severities = [CATEGORY_SEVERITY[f.category] for f in findings]
        risk_level = max(severities, key=RISK_LEVELS.index)
        weight = sum(SEVERITY_WEIGHTS[s] for s in severities)
        confidence = min(1.0, 0.2 * len(findings) + min(0.5, 0.1 * weight))
        return risk_level, round(confidence, 3)

    @staticmethod
    def _scan(text: str, checks) -> List[_Finding]:
        findings = []
        for category, compiled in checks:
            for pattern in compiled:
                if pattern.search(text):
                    findings.append(_Finding(category, pattern.pattern))
        return findings

    def _flooding(self, text: str) -> List[_Finding]:
        findings = []
        if self._repetition.search(text):
            findings.append(_Finding("repetition_flood", REPETITION_PATTERN))
        non_ascii = sum(1 for ch in text if ord(ch) > 127)
        if len(text) >= 20 and non_ascii / len(text) > NON_ASCII_LIMIT:
            findings.append(_Finding("obfuscation", "non_ascii_ratio"))
        return findings

    def _blocked(
        self,
        reason: str,
        category: str,
        matched: List[str],
        risk_level: str,
        confidence: float = 1.0,
    ) -> ScreenResult:
        logger.info(
            f"Safety block: reason={reason}, level={self.level}",
            extra={"event": "safety_block", "reason": reason, "risk_level": risk_level},
        )
        return ScreenResult(
            allowed=False,
            reason=reason,
            category=category,
            matched=matched,
            risk_level=risk_level,
            confidence=confidence,
        )
