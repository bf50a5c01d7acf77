"""
AI analysis of device test results.

The primary path asks an LLM (Groq's OpenAI-compatible chat completions API)
for a structured bug report. Whenever that path fails for any reason the
engine falls back to a deterministic rule-based analysis, so a finished
job always gets a report.
"""

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

import requests

from mt_common.errors import AnalysisUnavailable
from mt_common.models import FAILED, PASSED, SEVERITIES, JobIssue, JobReport, TestResult

logger = logging.getLogger(__name__)

GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
DEFAULT_MODEL = "llama-3.1-8b-instant"

SYSTEM_PROMPT = (
    "You are an expert Android developer and QA engineer. Analyze test results "
    "and provide actionable bug fixes and recommendations. Always respond with "
    "valid JSON in the exact format requested."
)

SLOW_TEST_SECONDS = 60

# Matches am_anr, ANRs and anr_trace; not words that merely contain "anr"
ANR_PATTERN = re.compile(r"(?<![a-z])anr|application not responding", re.IGNORECASE)
CRASH_PATTERN = re.compile(r"crash|exception", re.IGNORECASE)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def pass_rate(results: list[TestResult]) -> int:
    """Percentage of passed results, rounded half up; 0 when there are none."""
    if not results:
        return 0
    passed = sum(1 for r in results if r.status == PASSED)
    return round_half_up(passed / len(results) * 100)


def build_analysis_prompt(
    results: list[TestResult], context: str, artifact_name: str
) -> str:
    """Render the user prompt sent to the LLM."""
    blocks = []
    for result in results:
        lines = [
            f"Device: {result.device}",
            f"Status: {result.status}",
            f"Duration: {result.duration}s",
            f"Logs: {result.logs}",
        ]
        if result.screenshots:
            lines.append(f"Screenshots: {len(result.screenshots)}")
        lines.append("---")
        blocks.append("\n".join(lines))

    return f"""Analyze the following Android APK test results and provide a comprehensive bug report.

APP INFORMATION:
Name: {artifact_name}
README: {context or "No README provided"}

TEST RESULTS:
{chr(10).join(blocks)}

Please analyze these results and respond with a JSON object in this exact format:
{{
  "summary": "A brief overview of the test results and overall app health (2-3 sentences)",
  "issues": [
    {{
      "title": "Brief issue title",
      "description": "Detailed description of the issue",
      "severity": "low|medium|high|critical",
      "fix": "Specific actionable steps to fix this issue",
      "device": "Device name where this issue occurred (optional)"
    }}
  ]
}}

Focus on:
1. Crashes, ANRs, and fatal errors (critical/high severity)
2. Performance issues and slow responses (medium severity)
3. UI/UX issues and minor bugs (low/medium severity)
4. Compatibility issues across devices
5. Actionable fix suggestions based on common Android development patterns

If no issues are found, still provide the summary and include any recommendations for improvement."""


def parse_report(content: str | None) -> JobReport:
    """
    Parse the LLM's JSON answer into a JobReport.

    Raises:
        AnalysisUnavailable: If the content is empty, not JSON, or malformed
    """
    if not content:
        raise AnalysisUnavailable("Empty response from analysis model")

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise AnalysisUnavailable(f"Analysis response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise AnalysisUnavailable("Analysis response is not a JSON object")

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise AnalysisUnavailable("Analysis response has no summary")

    raw_issues = data.get("issues") or []
    if not isinstance(raw_issues, list):
        raise AnalysisUnavailable("Analysis issues must be a list")

    issues = []
    for raw in raw_issues:
        if not isinstance(raw, dict):
            raise AnalysisUnavailable(f"Malformed issue in analysis response: {raw!r}")
        try:
            title = str(raw["title"])
            description = str(raw["description"])
            fix = str(raw["fix"])
        except KeyError as e:
            raise AnalysisUnavailable(f"Issue is missing field {e}") from e

        severity = str(raw.get("severity", "")).lower()
        if severity not in SEVERITIES:
            severity = "medium"

        device = raw.get("device")
        issues.append(
            JobIssue(
                title=title,
                description=description,
                severity=severity,
                fix=fix,
                device=str(device) if device else None,
            )
        )

    return JobReport(summary=summary, issues=tuple(issues))


def fallback_analyze(results: list[TestResult]) -> JobReport:
    """
    Rule-based analysis used when the LLM is unavailable.

    Only failed results are inspected. Same input always gives the same report.
    """
    issues: list[JobIssue] = []

    for result in results:
        if result.status != FAILED:
            continue

        if ANR_PATTERN.search(result.logs):
            issues.append(
                JobIssue(
                    title="Application Not Responding (ANR)",
                    description=(
                        f"ANR detected on {result.device}. "
                        "The app became unresponsive during testing."
                    ),
                    severity="high",
                    fix=(
                        "Move long-running operations to background threads. Use "
                        "coroutines, Thread, or ExecutorService for heavy computations."
                    ),
                    device=result.device,
                )
            )

        if CRASH_PATTERN.search(result.logs):
            issues.append(
                JobIssue(
                    title="Application Crash",
                    description=(
                        f"Crash detected on {result.device}. "
                        "Check logs for exception details."
                    ),
                    severity="critical",
                    fix=(
                        "Add proper exception handling, null checks, and validate input "
                        "data. Use try-catch blocks around risky operations."
                    ),
                    device=result.device,
                )
            )

        if result.duration > SLOW_TEST_SECONDS:
            issues.append(
                JobIssue(
                    title="Slow Test Execution",
                    description=(
                        f"Test took {result.duration} seconds on {result.device}, "
                        "indicating potential performance issues."
                    ),
                    severity="medium",
                    fix=(
                        "Optimize app startup time, reduce memory usage, and minimize "
                        "network calls during initialization."
                    ),
                    device=result.device,
                )
            )

    summary = f"Tested on {len(results)} devices with {pass_rate(results)}% pass rate. "
    critical = sum(1 for i in issues if i.severity == "critical")
    high = sum(1 for i in issues if i.severity == "high")

    if not issues:
        summary += "No critical issues detected. App appears stable across tested devices."
    elif critical:
        summary += f"{critical} critical issue(s) found requiring immediate attention."
    elif high:
        summary += f"{high} high-priority issue(s) found that should be addressed."
    else:
        summary += f"{len(issues)} minor issue(s) found with recommendations for improvement."

    return JobReport(summary=summary, issues=tuple(issues))


@dataclass(frozen=True)
class TestInsights:
    """Dashboard scores (0-100) for a finished job."""

    __test__ = False  # not a pytest class

    compatibility: int
    performance: int
    stability: int
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "compatibility": self.compatibility,
            "performance": self.performance,
            "stability": self.stability,
            "recommendations": list(self.recommendations),
        }


def compute_insights(results: list[TestResult]) -> TestInsights:
    """Derive compatibility, performance and stability scores from results."""
    if not results:
        return TestInsights(
            compatibility=0,
            performance=0,
            stability=0,
            recommendations=["Run tests on at least one device to get insights"],
        )

    total = len(results)
    compatibility = pass_rate(results)

    avg_duration = sum(r.duration for r in results) / total
    # Faster runs score higher, 30s is the baseline
    performance = min(100, max(0, round_half_up(100 - (avg_duration - 30) * 2)))

    unstable = sum(
        1 for r in results if CRASH_PATTERN.search(r.logs) or ANR_PATTERN.search(r.logs)
    )
    stability = max(0, round_half_up(100 - unstable / total * 50))

    recommendations = []
    if compatibility < 80:
        recommendations.append("Consider testing on additional device configurations")
    if performance < 70:
        recommendations.append("Optimize app startup and runtime performance")
    if stability < 90:
        recommendations.append("Address crashes and ANR issues before release")
    if avg_duration > 45:
        recommendations.append("Review app initialization and reduce startup time")

    return TestInsights(compatibility, performance, stability, recommendations)


class AnalysisEngine:
    """
    Produces a JobReport for a finished job.

    Without an API key every analysis uses the rule-based fallback.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        api_url: str = GROQ_API_URL,
        request_timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.request_timeout = request_timeout

    async def analyze(
        self, results: list[TestResult], context: str = "", artifact_name: str = "app.apk"
    ) -> JobReport:
        """
        Analyze test results. Never raises for well-formed input.

        Args:
            results: Per-device results of the finished matrix
            context: README or notes supplied with the upload
            artifact_name: File name of the tested APK

        Returns:
            The LLM report, or the fallback report if the LLM path fails
        """
        if not results or not self.api_key:
            return fallback_analyze(results)

        prompt = build_analysis_prompt(results, context, artifact_name)
        try:
            content = await asyncio.to_thread(
                self._request_completion,
                [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                2048,
                True,
            )
            return parse_report(content)
        except AnalysisUnavailable as e:
            logger.warning(f"AI analysis unavailable, using fallback analysis: {e}")
            return fallback_analyze(results)

    def _request_completion(
        self, messages: list[dict[str, str]], max_tokens: int, json_mode: bool
    ) -> str | None:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": 0.1,
            "max_tokens": max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        try:
            response = requests.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise AnalysisUnavailable(f"Analysis request failed: {e}") from e

        try:
            return payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisUnavailable(f"Unexpected analysis response shape: {e}") from e

    async def validate_connection(self) -> bool:
        """Check that the analysis model answers a trivial prompt."""
        if not self.api_key:
            return False
        try:
            content = await asyncio.to_thread(
                self._request_completion,
                [{"role": "user", "content": 'Respond with "OK" if you can read this message.'}],
                10,
                False,
            )
        except AnalysisUnavailable as e:
            logger.warning(f"Analysis connection check failed: {e}")
            return False
        return bool(content and "OK" in content)
