from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, List, Optional, Pattern, Tuple
from urllib.parse import unquote_plus

from .security_metrics import THREAT_MATCHES_TOTAL

MAX_FIELD_LENGTH = 10_000
MAX_BODY_DEPTH = 20


class ThreatSeverity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ThreatSeverity.NONE: 0,
    ThreatSeverity.LOW: 1,
    ThreatSeverity.MEDIUM: 2,
    ThreatSeverity.HIGH: 3,
}


class ThreatClass(str, Enum):
    SQL_INJECTION = "sql_injection"
    XSS_ATTEMPT = "xss_attempt"
    PROTOCOL_ABUSE = "protocol_abuse"
    PATH_TRAVERSAL = "path_traversal"
    ATTACK_PATH = "attack_path"
    ATTACK_TOOL_AGENT = "attack_tool_agent"
    OVERSIZED_FIELD = "oversized_field"


CLASS_SEVERITY = {
    ThreatClass.SQL_INJECTION: ThreatSeverity.HIGH,
    ThreatClass.XSS_ATTEMPT: ThreatSeverity.HIGH,
    ThreatClass.PROTOCOL_ABUSE: ThreatSeverity.HIGH,
    ThreatClass.PATH_TRAVERSAL: ThreatSeverity.MEDIUM,
    ThreatClass.ATTACK_PATH: ThreatSeverity.MEDIUM,
    ThreatClass.ATTACK_TOOL_AGENT: ThreatSeverity.LOW,
    ThreatClass.OVERSIZED_FIELD: ThreatSeverity.LOW,
}

# Request parts a pattern applies to
PATH = "path"
QUERY = "query"
BODY = "body"
USER_AGENT = "user_agent"


@dataclass(frozen=True)
class ThreatPattern:
    name: str
    threat_class: ThreatClass
    regex: Pattern[str]
    targets: Tuple[str, ...]

    @property
    def severity(self) -> ThreatSeverity:
        return CLASS_SEVERITY[self.threat_class]


def _p(name: str, cls: ThreatClass, pattern: str, *targets: str) -> ThreatPattern:
    return ThreatPattern(name, cls, re.compile(pattern, re.IGNORECASE), targets)


THREAT_PATTERNS: Tuple[ThreatPattern, ...] = (
    # SQL injection shapes
    _p("union_select", ThreatClass.SQL_INJECTION, r"union\s+(all\s+)?select", QUERY, BODY),
    _p("or_tautology", ThreatClass.SQL_INJECTION, r"\bor\s+1\s*=\s*1\b", QUERY, BODY),
    _p("and_tautology", ThreatClass.SQL_INJECTION, r"\band\s+1\s*=\s*1\b", QUERY, BODY),
    _p("quote_or", ThreatClass.SQL_INJECTION, r"'\s*or\s*'", QUERY, BODY),
    _p("quote_or_number", ThreatClass.SQL_INJECTION, r"'\s*or\s+\d", QUERY, BODY),
    _p("quote_and", ThreatClass.SQL_INJECTION, r"'\s*and\s*'", QUERY, BODY),
    _p("drop_table", ThreatClass.SQL_INJECTION, r"drop\s+table", QUERY, BODY),
    # prose-like statements are only suspicious in the query string
    _p("insert_into", ThreatClass.SQL_INJECTION, r"insert\s+into", QUERY),
    _p("update_set", ThreatClass.SQL_INJECTION, r"update\s+\w+\s+set\b", QUERY),
    _p("delete_from", ThreatClass.SQL_INJECTION, r"delete\s+from", QUERY),
    _p("sql_comment_terminator", ThreatClass.SQL_INJECTION, r"'\s*;?\s*--", QUERY, BODY),
    # script / markup injection
    _p("script_tag", ThreatClass.XSS_ATTEMPT, r"<\s*script", PATH, QUERY, BODY),
    _p(
        "event_handler",
        ThreatClass.XSS_ATTEMPT,
        r"\bon(abort|blur|change|click|dblclick|error|focus|input|load|submit|toggle"
        r"|key[a-z]+|mouse[a-z]+|pointer[a-z]+|animation[a-z]+)\s*=",
        QUERY,
        BODY,
    ),
    _p("iframe_tag", ThreatClass.XSS_ATTEMPT, r"<\s*iframe", PATH, QUERY, BODY),
    _p("object_tag", ThreatClass.XSS_ATTEMPT, r"<\s*object", PATH, QUERY, BODY),
    _p("embed_tag", ThreatClass.XSS_ATTEMPT, r"<\s*embed", PATH, QUERY, BODY),
    _p("eval_call", ThreatClass.XSS_ATTEMPT, r"\beval\s*\(", QUERY, BODY),
    _p("css_expression", ThreatClass.XSS_ATTEMPT, r"expression\s*\(", QUERY, BODY),
    # protocol-scheme abuse
    _p("javascript_scheme", ThreatClass.PROTOCOL_ABUSE, r"javascript\s*:", PATH, QUERY, BODY),
    _p("vbscript_scheme", ThreatClass.PROTOCOL_ABUSE, r"vbscript\s*:", PATH, QUERY, BODY),
    _p(
        "data_uri_markup",
        ThreatClass.PROTOCOL_ABUSE,
        r"data:[^,;]*(text/html|image/svg\+xml|;base64)",
        PATH,
        QUERY,
        BODY,
    ),
    # traversal
    _p("dot_dot_slash", ThreatClass.PATH_TRAVERSAL, r"\.\.[/\\]", PATH, QUERY),
    _p("encoded_dot_dot", ThreatClass.PATH_TRAVERSAL, r"%2e%2e", PATH, QUERY),
    # scans for well-known sensitive paths
    _p(
        "sensitive_path_scan",
        ThreatClass.ATTACK_PATH,
        r"/(wp-admin|phpmyadmin|\.env\b|config\.php|admin\.php|wp-config\.php|\.git/"
        r"|etc/passwd|proc/version)",
        PATH,
        QUERY,
    ),
    # scanner user agents
    _p(
        "scanner_user_agent",
        ThreatClass.ATTACK_TOOL_AGENT,
        r"sqlmap|nikto|nmap|masscan|acunetix|wpscan|dirbuster|gobuster|nuclei|zgrab|hydra",
        USER_AGENT,
    ),
)


@dataclass(frozen=True)
class ThreatMatch:
    pattern: str
    threat_class: ThreatClass
    severity: ThreatSeverity
    location: str

    def to_dict(self) -> dict:
        return {
            "pattern": self.pattern,
            "class": self.threat_class.value,
            "severity": self.severity.value,
            "location": self.location,
        }


@dataclass(frozen=True)
class ThreatReport:
    matches: Tuple[ThreatMatch, ...] = field(default_factory=tuple)

    @property
    def suspicious(self) -> bool:
        return bool(self.matches)

    @property
    def matched_patterns(self) -> List[str]:
        """Distinct threat classes, in first-seen order."""
        seen: List[str] = []
        for match in self.matches:
            if match.threat_class.value not in seen:
                seen.append(match.threat_class.value)
        return seen

    @property
    def severity(self) -> ThreatSeverity:
        worst = ThreatSeverity.NONE
        for match in self.matches:
            if match.severity.rank > worst.rank:
                worst = match.severity
        return worst

    @property
    def should_block(self) -> bool:
        return self.severity == ThreatSeverity.HIGH

    def to_dict(self) -> dict:
        return {
            "suspicious": self.suspicious,
            "matched_patterns": self.matched_patterns,
            "severity": self.severity.value,
            "matches": [m.to_dict() for m in self.matches],
        }


CLEAN = ThreatReport()


def _walk_strings(value: Any, path: str = "", depth: int = 0) -> Iterator[Tuple[str, str]]:
    if depth > MAX_BODY_DEPTH:
        return
    if isinstance(value, str):
        yield path or "body", value
    elif isinstance(value, dict):
        for key, item in value.items():
            child = f"{path}.{key}" if path else str(key)
            yield from _walk_strings(item, child, depth + 1)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from _walk_strings(item, f"{path}[{index}]", depth + 1)


class ThreatDetector:
    """
    Stateless signature scanner over the URL, user agent and JSON body.

    Patterns come from a fixed table compiled at import time. Each pattern
    reports at most once per request part.
    """

    def __init__(
        self,
        patterns: Tuple[ThreatPattern, ...] = THREAT_PATTERNS,
        max_field_length: int = MAX_FIELD_LENGTH,
    ) -> None:
        self.patterns = patterns
        self.max_field_length = max_field_length

    def _scan_text(self, text: str, target: str, location: str) -> List[ThreatMatch]:
        matches = []
        for pattern in self.patterns:
            if target in pattern.targets and pattern.regex.search(text):
                matches.append(
                    ThreatMatch(
                        pattern=pattern.name,
                        threat_class=pattern.threat_class,
                        severity=pattern.severity,
                        location=location,
                    )
                )
        return matches

    def scan(
        self,
        path: str,
        query: str = "",
        user_agent: Optional[str] = None,
        body: Any = None,
    ) -> ThreatReport:
        matches: List[ThreatMatch] = []
        seen = set()

        def add(found: List[ThreatMatch]) -> None:
            for match in found:
                key = (match.pattern, match.location.split(".")[0].split("[")[0])
                if key not in seen:
                    seen.add(key)
                    matches.append(match)

        for text in _variants(path):
            add(self._scan_text(text, PATH, "path"))
        for text in _variants(query):
            add(self._scan_text(text, QUERY, "query"))
        if user_agent:
            add(self._scan_text(user_agent, USER_AGENT, "user_agent"))
        if body is not None:
            for field_path, value in _walk_strings(body):
                location = f"body.{field_path}" if field_path != "body" else "body"
                add(self._scan_text(value, BODY, location))
                if len(value) > self.max_field_length:
                    add(
                        [
                            ThreatMatch(
                                pattern="field_too_long",
                                threat_class=ThreatClass.OVERSIZED_FIELD,
                                severity=CLASS_SEVERITY[ThreatClass.OVERSIZED_FIELD],
                                location=location,
                            )
                        ]
                    )

        for match in matches:
            THREAT_MATCHES_TOTAL.labels(threat_class=match.threat_class.value).inc()
        return ThreatReport(matches=tuple(matches)) if matches else CLEAN


def _variants(text: str) -> List[str]:
    """The raw text plus its percent-decoded form, when decoding changes it."""
    if not text:
        return []
    decoded = unquote_plus(text)
    return [text] if decoded == text else [text, decoded]


def is_suspicious(payload: str) -> bool:
    """True when a free-form string carries a high severity signature."""
    return ThreatDetector().scan(path="", query=payload).should_block
