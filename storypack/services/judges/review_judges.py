"""Self-review and coherence judges over a whole pack version."""

from typing import List, Optional, Sequence

from storypack.models.outcomes import JudgeOutcome
from storypack.models.quality import (
    CoherenceVerdict,
    IssueSeverity,
    IssueType,
    MissedRequirement,
    OffTopicStory,
    OverallAssessment,
    ReviewIssue,
    SelfReviewVerdict,
    SourceTopic,
    StoryInput,
)
from storypack.prompts.judge_prompts import (
    COHERENCE_PROMPT,
    SELF_REVIEW_PROMPT,
    build_coherence_message,
    build_self_review_message,
)
from storypack.services.judges.base_judge import BaseJudge
from storypack.utils.json_parser import extract_json_object


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def _flatten_issues(story_reviews, story_count: int) -> List[ReviewIssue]:
    issues: List[ReviewIssue] = []
    for review in _as_list(story_reviews):
        if not isinstance(review, dict):
            continue
        story_index = _as_int(review.get("storyIndex"))
        if story_index is None or not 0 <= story_index < story_count:
            continue
        for issue in _as_list(review.get("issues")):
            if not isinstance(issue, dict):
                continue
            try:
                issue_type = IssueType(issue.get("issueType"))
            except ValueError:
                continue
            severity = IssueSeverity.ERROR if issue.get("severity") == "error" else IssueSeverity.WARNING
            issues.append(
                ReviewIssue(
                    story_index=story_index,
                    ac_index=_as_int(issue.get("acIndex")),
                    issue_type=issue_type,
                    description=str(issue.get("description") or ""),
                    suggested_fix=str(issue.get("suggestedFix") or ""),
                    severity=severity,
                )
            )
    return issues


class SelfReviewJudge(BaseJudge):
    """Reviews every story against its cited evidence and scores the version."""

    name = "self_review_judge"
    max_output_tokens = 4096

    async def review(
        self, stories: Sequence[StoryInput], source_context: str
    ) -> JudgeOutcome[SelfReviewVerdict]:
        def parse(raw: str) -> Optional[SelfReviewVerdict]:
            payload = extract_json_object(raw)
            if payload is None:
                return None

            try:
                assessment = OverallAssessment(payload.get("overallAssessment"))
            except ValueError:
                assessment = OverallAssessment.ACCEPTABLE

            score = _as_int(payload.get("confidenceScore"))
            if score is not None:
                score = max(0, min(100, score))

            missed = [
                MissedRequirement(
                    topic=str(item.get("topic") or ""),
                    source_evidence=str(item.get("sourceEvidence") or ""),
                    suggestion=str(item.get("suggestion") or ""),
                )
                for item in _as_list(payload.get("missedRequirements"))
                if isinstance(item, dict) and item.get("topic")
            ]

            return SelfReviewVerdict(
                overall_assessment=assessment,
                issues=_flatten_issues(payload.get("storyReviews"), len(stories)),
                missed_requirements=missed,
                confidence_score=score,
            )

        message = build_self_review_message(stories, source_context)
        return await self._call(SELF_REVIEW_PROMPT, message, parse)


class CoherenceJudge(BaseJudge):
    """Flags stories whose want-statement maps to no source topic."""

    name = "coherence_judge"
    max_output_tokens = 1024

    async def check(
        self, topics: Sequence[SourceTopic], stories: Sequence[StoryInput]
    ) -> JudgeOutcome[CoherenceVerdict]:
        def parse(raw: str) -> Optional[CoherenceVerdict]:
            payload = extract_json_object(raw)
            if payload is None or ("offTopicStories" not in payload and "coherent" not in payload):
                return None

            off_topic: List[OffTopicStory] = []
            seen = set()
            for item in _as_list(payload.get("offTopicStories")):
                if not isinstance(item, dict):
                    continue
                index = _as_int(item.get("index"))
                if index is None or not 0 <= index < len(stories) or index in seen:
                    continue
                seen.add(index)
                off_topic.append(OffTopicStory(index=index, reason=str(item.get("reason") or "")))

            # Coherent iff nothing was flagged, whatever the "coherent" field says
            return CoherenceVerdict(is_coherent=not off_topic, off_topic_stories=off_topic)

        message = build_coherence_message(topics, stories)
        return await self._call(COHERENCE_PROMPT, message, parse)
