"""
コンテンツ検証
インポート対象イベントの安全性チェック(無効と判定されたイベントは取り込まない)
"""

import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List, Protocol

from ...core.models import CalendarEvent


class Severity(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_ORDER = {Severity.NONE: 0, Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


@dataclass
class ValidationIssue:
    field_name: str
    severity: Severity
    message: str


@dataclass
class ValidationResult:
    """イベント検証結果"""
    is_valid: bool
    severity: Severity = Severity.NONE
    issues: List[ValidationIssue] = field(default_factory=list)
    recommendation: str = "approve"  # approve, review, block

    def summary(self) -> str:
        return "; ".join(issue.message for issue in self.issues) or "no issues"


@dataclass
class IcsValidationResult:
    is_valid: bool
    event_count: int = 0
    issues: List[str] = field(default_factory=list)


class ContentValidator(Protocol):
    """コンテンツ検証インターフェース"""

    def validate_event(self, event: CalendarEvent) -> ValidationResult: ...

    def validate_ics_content(self, text: str) -> IcsValidationResult: ...


class KeywordContentValidator:
    """キーワード・パターンによる既定の検証器"""

    INAPPROPRIATE_KEYWORDS = (
        'adult', 'explicit', 'mature', 'nsfw', 'inappropriate', 'violence', 'weapon',
        'drug', 'alcohol', 'gambling', 'dating', 'romance', 'intimate', 'private party',
    )

    SUSPICIOUS_PATTERNS = (
        re.compile(r'\$\d+'),
        re.compile(r'cash only', re.IGNORECASE),
        re.compile(r'no questions asked', re.IGNORECASE),
        re.compile(r'\b(18|21)\+'),
        re.compile(r'adults only', re.IGNORECASE),
    )

    RESTRICTED_VENUES = (
        'bar', 'club', 'casino', 'nightclub', 'strip club',
        'adult store', 'liquor store', 'tobacco shop',
    )

    BLOCKED_DOMAINS = ('casino.com', 'gambling.com', 'adult.com', 'mature.com')

    URL_PATTERN = re.compile(r'https?://([^/\s]+)', re.IGNORECASE)

    MAX_DURATION = timedelta(hours=12)

    def __init__(self, check_late_night: bool = True):
        self.check_late_night = check_late_night

    def validate_event(self, event: CalendarEvent) -> ValidationResult:
        issues: List[ValidationIssue] = []
        text = f"{event.title} {event.description}".lower()

        for keyword in self.INAPPROPRIATE_KEYWORDS:
            if re.search(rf'\b{re.escape(keyword)}\b', text):
                issues.append(ValidationIssue("content", Severity.HIGH,
                                              f"Inappropriate keyword: {keyword}"))

        for pattern in self.SUSPICIOUS_PATTERNS:
            if pattern.search(text):
                issues.append(ValidationIssue("content", Severity.MEDIUM,
                                              f"Suspicious pattern: {pattern.pattern}"))

        location = (event.location or "").lower()
        for venue in self.RESTRICTED_VENUES:
            if re.search(rf'\b{re.escape(venue)}\b', location):
                issues.append(ValidationIssue("location", Severity.MEDIUM,
                                              f"Restricted venue: {venue}"))
                break

        for domain in self.URL_PATTERN.findall(f"{text} {location}"):
            domain = domain.lower()
            if any(domain == blocked or domain.endswith("." + blocked) for blocked in self.BLOCKED_DOMAINS):
                issues.append(ValidationIssue("content", Severity.HIGH, f"Blocked domain: {domain}"))

        if self.check_late_night and not event.all_day and event.start:
            hour = event.start.hour
            if hour >= 22 or hour < 5:
                issues.append(ValidationIssue("start", Severity.MEDIUM, "Late night event"))

        if event.start and event.end and not event.all_day and event.duration > self.MAX_DURATION:
            issues.append(ValidationIssue("end", Severity.LOW, "Event longer than 12 hours"))

        severity = max((i.severity for i in issues), key=SEVERITY_ORDER.get, default=Severity.NONE)
        is_valid = severity != Severity.HIGH
        if severity == Severity.HIGH:
            recommendation = "block"
        elif severity == Severity.MEDIUM:
            recommendation = "review"
        else:
            recommendation = "approve"

        return ValidationResult(is_valid=is_valid, severity=severity,
                                issues=issues, recommendation=recommendation)

    def validate_ics_content(self, text: str) -> IcsValidationResult:
        """ICSテキストの構造チェック(文法解析はしない)"""
        issues = []
        lines = [line.strip().upper() for line in text.splitlines()]

        if "BEGIN:VCALENDAR" not in lines:
            issues.append("Missing BEGIN:VCALENDAR")
        if "END:VCALENDAR" not in lines:
            issues.append("Missing END:VCALENDAR")

        begins = lines.count("BEGIN:VEVENT")
        ends = lines.count("END:VEVENT")
        if begins != ends:
            issues.append(f"Unbalanced VEVENT blocks ({begins} begin, {ends} end)")

        return IcsValidationResult(is_valid=not issues, event_count=min(begins, ends), issues=issues)
