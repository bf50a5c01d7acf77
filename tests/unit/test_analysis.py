"""
Unit tests for the analysis engine and the rule-based fallback.

The Groq HTTP call is mocked at requests.post.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from mt_common.errors import AnalysisUnavailable
from mt_common.models import TestResult
from mt_controller.analysis import (
    AnalysisEngine,
    build_analysis_prompt,
    compute_insights,
    fallback_analyze,
    parse_report,
    pass_rate,
    round_half_up,
)

PASSED_45 = TestResult(device="panther", status="passed", duration=45, logs="ok")
FAILED_ANR = TestResult(
    device="husky", status="failed", duration=30, logs="ANR in com.example.MainActivity"
)


def groq_response(content: str | None) -> MagicMock:
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


class TestPassRate:
    def test_empty(self):
        assert pass_rate([]) == 0

    def test_rounds_half_up(self):
        results = [PASSED_45] + [FAILED_ANR] * 7
        # 1/8 = 12.5%
        assert pass_rate(results) == 13

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(2.4) == 2


class TestFallbackAnalyze:
    def test_anr_scenario(self):
        """One pass and one ANR failure gives one high issue and a 50% pass rate."""
        report = fallback_analyze([PASSED_45, FAILED_ANR])

        assert len(report.issues) == 1
        issue = report.issues[0]
        assert issue.severity == "high"
        assert issue.title == "Application Not Responding (ANR)"
        assert issue.device == "husky"
        assert report.summary == (
            "Tested on 2 devices with 50% pass rate. "
            "1 high-priority issue(s) found that should be addressed."
        )

    def test_empty_results(self):
        report = fallback_analyze([])

        assert report.issues == ()
        assert report.summary.startswith("Tested on 0 devices with 0% pass rate.")

    def test_deterministic(self):
        results = [PASSED_45, FAILED_ANR]
        assert fallback_analyze(results) == fallback_analyze(list(results))

    def test_crash_is_critical(self):
        crashed = TestResult(
            device="panther",
            status="failed",
            duration=10,
            logs="FATAL EXCEPTION: main java.lang.NullPointerException",
        )
        report = fallback_analyze([crashed])

        assert [i.severity for i in report.issues] == ["critical"]
        assert report.summary.endswith(
            "1 critical issue(s) found requiring immediate attention."
        )

    def test_slow_failure_is_minor(self):
        slow = TestResult(device="panther", status="failed", duration=61, logs="timeout")
        report = fallback_analyze([slow])

        assert [i.severity for i in report.issues] == ["medium"]
        assert "61 seconds" in report.issues[0].description
        assert report.summary.endswith(
            "1 minor issue(s) found with recommendations for improvement."
        )

    def test_passed_results_are_not_inspected(self):
        noisy_pass = TestResult(
            device="panther", status="passed", duration=90, logs="ANR crash exception"
        )
        report = fallback_analyze([noisy_pass])

        assert report.issues == ()
        assert "App appears stable" in report.summary

    @pytest.mark.parametrize(
        "logs",
        [
            "am_anr: [0,1234,com.example,...]",
            "2 ANRs detected in MainActivity",
            "Wrote stack traces to anr_trace.txt",
            "Application Not Responding: com.example",
        ],
    )
    def test_android_anr_markers(self, logs):
        failed = TestResult(device="panther", status="failed", logs=logs)

        issues = fallback_analyze([failed]).issues

        assert [(i.severity, i.title) for i in issues] == [
            ("high", "Application Not Responding (ANR)")
        ]

    def test_anr_inside_another_word_is_ignored(self):
        failed = TestResult(device="panther", status="failed", logs="Loading manrope font")
        assert fallback_analyze([failed]).issues == ()


class TestParseReport:
    def test_valid_report(self):
        content = json.dumps(
            {
                "summary": "App is mostly stable.",
                "issues": [
                    {
                        "title": "Crash on login",
                        "description": "NPE in LoginActivity",
                        "severity": "critical",
                        "fix": "Null-check the session",
                        "device": "panther",
                    }
                ],
            }
        )
        report = parse_report(content)

        assert report.summary == "App is mostly stable."
        assert report.issues[0].severity == "critical"
        assert report.issues[0].device == "panther"

    def test_unknown_severity_becomes_medium(self):
        content = json.dumps(
            {
                "summary": "s",
                "issues": [
                    {"title": "t", "description": "d", "severity": "urgent", "fix": "f"}
                ],
            }
        )
        assert parse_report(content).issues[0].severity == "medium"

    def test_missing_issues_means_none(self):
        assert parse_report(json.dumps({"summary": "Fine"})).issues == ()

    @pytest.mark.parametrize(
        "content",
        [
            None,
            "",
            "not json",
            json.dumps(["summary"]),
            json.dumps({"issues": []}),
            json.dumps({"summary": "s", "issues": "none"}),
            json.dumps({"summary": "s", "issues": [{"title": "t"}]}),
        ],
    )
    def test_malformed_content(self, content):
        with pytest.raises(AnalysisUnavailable):
            parse_report(content)


class TestAnalysisEngine:
    @pytest.mark.asyncio
    async def test_without_api_key_uses_fallback(self):
        engine = AnalysisEngine(api_key=None)

        with patch("mt_controller.analysis.requests.post") as mock_post:
            report = await engine.analyze([PASSED_45, FAILED_ANR])

        mock_post.assert_not_called()
        assert report == fallback_analyze([PASSED_45, FAILED_ANR])

    @pytest.mark.asyncio
    async def test_empty_results_never_call_model(self):
        engine = AnalysisEngine(api_key="gsk_test")

        with patch("mt_controller.analysis.requests.post") as mock_post:
            report = await engine.analyze([])

        mock_post.assert_not_called()
        assert report.issues == ()
        assert "0 devices" in report.summary

    @pytest.mark.asyncio
    async def test_model_report_is_used(self):
        engine = AnalysisEngine(api_key="gsk_test")
        content = json.dumps({"summary": "Looks good overall.", "issues": []})

        with patch(
            "mt_controller.analysis.requests.post", return_value=groq_response(content)
        ) as mock_post:
            report = await engine.analyze([PASSED_45], context="Login app", artifact_name="app.apk")

        assert report.summary == "Looks good overall."
        body = mock_post.call_args.kwargs["json"]
        assert body["model"] == "llama-3.1-8b-instant"
        assert body["temperature"] == 0.1
        assert body["max_tokens"] == 2048
        assert body["response_format"] == {"type": "json_object"}
        assert "Login app" in body["messages"][1]["content"]
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer gsk_test"

    @pytest.mark.asyncio
    async def test_transport_error_falls_back(self):
        engine = AnalysisEngine(api_key="gsk_test")

        with patch(
            "mt_controller.analysis.requests.post",
            side_effect=requests.exceptions.ConnectionError("down"),
        ):
            report = await engine.analyze([PASSED_45, FAILED_ANR])

        assert report == fallback_analyze([PASSED_45, FAILED_ANR])

    @pytest.mark.asyncio
    async def test_http_error_falls_back(self):
        engine = AnalysisEngine(api_key="gsk_test")
        response = MagicMock()
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("429")

        with patch("mt_controller.analysis.requests.post", return_value=response):
            report = await engine.analyze([FAILED_ANR])

        assert report == fallback_analyze([FAILED_ANR])

    @pytest.mark.asyncio
    async def test_malformed_model_output_falls_back(self):
        engine = AnalysisEngine(api_key="gsk_test")

        with patch(
            "mt_controller.analysis.requests.post",
            return_value=groq_response('{"summary": '),
        ):
            report = await engine.analyze([FAILED_ANR])

        assert report == fallback_analyze([FAILED_ANR])

    @pytest.mark.asyncio
    async def test_validate_connection(self):
        engine = AnalysisEngine(api_key="gsk_test")

        with patch(
            "mt_controller.analysis.requests.post", return_value=groq_response("OK")
        ):
            assert await engine.validate_connection() is True

        with patch(
            "mt_controller.analysis.requests.post",
            side_effect=requests.exceptions.Timeout("slow"),
        ):
            assert await engine.validate_connection() is False

    @pytest.mark.asyncio
    async def test_validate_connection_without_key(self):
        assert await AnalysisEngine().validate_connection() is False


class TestPrompt:
    def test_prompt_lists_each_device(self):
        shot = TestResult(
            device="panther", status="passed", screenshots=("a.png", "b.png")
        )
        prompt = build_analysis_prompt([shot, FAILED_ANR], "", "my.apk")

        assert "Name: my.apk" in prompt
        assert "README: No README provided" in prompt
        assert "Device: panther" in prompt
        assert "Screenshots: 2" in prompt
        assert "Logs: ANR in com.example.MainActivity" in prompt


class TestInsights:
    def test_empty(self):
        insights = compute_insights([])

        assert (insights.compatibility, insights.performance, insights.stability) == (0, 0, 0)
        assert len(insights.recommendations) == 1

    def test_scores(self):
        insights = compute_insights([PASSED_45, FAILED_ANR])

        assert insights.compatibility == 50
        # average 37.5s: 100 - 7.5 * 2 = 85
        assert insights.performance == 85
        # one of two results shows an ANR: 100 - 25
        assert insights.stability == 75
        assert "Consider testing on additional device configurations" in insights.recommendations
        assert "Address crashes and ANR issues before release" in insights.recommendations

    def test_performance_is_capped(self):
        fast = TestResult(device="panther", status="passed", duration=5)
        assert compute_insights([fast]).performance == 100
