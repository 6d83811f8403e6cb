"""
Markdown rendering of review results for the PR comment.

Every rendered review ends with a hidden marker carrying the installation id
and PR number, which is how an existing review comment is found again when its
id was not stored.
"""

import re
from datetime import datetime

from app.models.domain.review_domain import CodeSuggestion, ReviewResult

MARKER_PREFIX = "AI-REVIEW-MARKER"
SCORE_BAR_LENGTH = 20

_SEVERITY_ORDER = ("high", "medium", "low")
_SEVERITY_EMOJI = {"high": "🔴", "medium": "🟡", "low": "🟢"}
_TYPE_EMOJI = {"fix": "🐛", "improvement": "✨", "optimization": "⚡", "style": "🎨"}


def review_marker(installation_id: str, pr_number: int, timestamp: datetime) -> str:
    return f"<!-- {MARKER_PREFIX}:{installation_id}:{pr_number}:{timestamp.isoformat()} -->"


def marker_pattern(installation_id: str, pr_number: int) -> re.Pattern:
    """Matches the marker of any review comment for this PR, whatever its timestamp."""
    return re.compile(rf"<!-- {MARKER_PREFIX}:{re.escape(str(installation_id))}:{pr_number}:[^ ]+ -->")


def score_emoji(score: int) -> str:
    if score >= 85:
        return "🟢"
    if score >= 70:
        return "🟡"
    if score >= 50:
        return "🟠"
    return "🔴"


def score_status(score: int) -> str:
    if score >= 85:
        return "Ready to Merge"
    if score >= 70:
        return "Review Recommended"
    if score >= 50:
        return "Changes Needed"
    return "Major Issues Found"


def score_recommendation(score: int) -> str:
    if score >= 85:
        return "✅ This PR looks great and is ready for merge!"
    if score >= 70:
        return "⚠️ This PR is mostly good but could benefit from some improvements before merging."
    if score >= 50:
        return "❌ This PR needs significant improvements before it should be merged."
    return "🚫 This PR has major issues that must be addressed before merging."


def score_bar(score: int) -> str:
    filled = round(score / 100 * SCORE_BAR_LENGTH)
    return f"{score_emoji(score)} `{'█' * filled}{'░' * (SCORE_BAR_LENGTH - filled)}` {score}%"


def _format_rules(result: ReviewResult) -> str:
    passed, violated = result.rules_passed, result.rules_violated
    lines = [f"### 📋 Rules Compliance ({len(passed)}/{len(passed) + len(violated)} passed)"]

    if violated:
        lines.append(f"#### ❌ Rules Violated ({len(violated)})")
        lines.append("\n".join(f"{index}. {rule}" for index, rule in enumerate(violated, start=1)))

    if passed:
        lines.append(f"#### ✅ Rules Passed ({len(passed)})")
        lines.append(
            "<details>\n<summary>Click to view passed rules</summary>\n\n"
            + "\n".join(f"{index}. {rule}" for index, rule in enumerate(passed, start=1))
            + "\n\n</details>"
        )

    return "\n\n".join(lines)


def _format_suggestion(index: int, suggestion: CodeSuggestion) -> str:
    location = f"**{suggestion.file or 'General'}**"
    if suggestion.line_number:
        location += f" (Line {suggestion.line_number})"

    text = f"{index}. {location}\n   {_TYPE_EMOJI.get(suggestion.type, '💡')} {suggestion.description}"
    if suggestion.reasoning:
        text += f"\n\n   💭 **Reasoning:** {suggestion.reasoning}"
    if suggestion.suggested_code:
        text += f"\n\n   **Suggested Code:**\n   ```{suggestion.language or ''}\n   {suggestion.suggested_code}\n   ```"
    return text


def _format_suggestions(suggestions: list[CodeSuggestion]) -> str:
    if not suggestions:
        return "### 💡 Code Suggestions\n\n✨ Great job! No specific suggestions at this time."

    parts = [f"### 💡 Code Suggestions ({len(suggestions)})"]
    for severity in _SEVERITY_ORDER:
        group = [s for s in suggestions if s.severity == severity]
        if not group:
            continue
        parts.append(f"#### {_SEVERITY_EMOJI[severity]} {severity.capitalize()} Priority ({len(group)})")
        parts.append("\n\n".join(_format_suggestion(i, s) for i, s in enumerate(group, start=1)))
    return "\n\n".join(parts)


def format_review(result: ReviewResult) -> str:
    score = result.merge_score
    header = (
        f"## {score_emoji(score)} AI Code Review Results\n\n"
        f"**Status:** {score_status(score)}  \n"
        f"**Confidence:** {round(result.confidence * 100)}%\n\n---"
    )
    score_section = (
        f"### {score_emoji(score)} Merge Score: {score}/100\n\n"
        f"{score_bar(score)}\n\n"
        f"**Recommendation:** {score_recommendation(score)}\n\n"
        f"{result.summary}"
    ).rstrip()
    footer = (
        "<details>\n<summary>📊 Review Metadata</summary>\n\n"
        f"- **Processing Time:** {round(result.processing_time)}s\n"
        f"- **Analysis Date:** {result.created_at.isoformat()}\n\n"
        "</details>\n\n"
        "> 🤖 This review was generated by AI. Please use your judgment when applying suggestions.\n\n"
        f"{review_marker(result.installation_id, result.pr_number, result.created_at)}"
    )
    return "\n\n".join([header, score_section, _format_rules(result), _format_suggestions(result.suggestions), footer])


def format_in_progress_comment(installation_id: str, pr_number: int, timestamp: datetime) -> str:
    return (
        "## 🔍 PR Review In Progress\n\n---\n\n"
        "A review of this pull request has been triggered and is currently running.\n"
        "This comment will be updated automatically once the analysis is complete.\n\n"
        "> ⏳ This usually takes a minute or two.\n\n"
        f"{review_marker(installation_id, pr_number, timestamp)}"
    )


def format_error_comment(installation_id: str, pr_number: int, error_message: str, timestamp: datetime) -> str:
    """Failure notice. Carries the review marker so the next successful review replaces it."""
    return (
        "## ❌ PR Review Failed\n\n---\n\n"
        "### Error Details\n\n"
        "The PR review system encountered an error while analyzing this pull request:\n\n"
        f"```\n{error_message}\n```\n\n"
        "### What to do next\n\n"
        "1. **Manual Review:** Please proceed with manual code review\n"
        "2. **Retry:** Comment `review` on this pull request to trigger a new analysis\n"
        "3. **Support:** If this error persists, please contact support\n\n"
        f"{review_marker(installation_id, pr_number, timestamp)}"
    )
