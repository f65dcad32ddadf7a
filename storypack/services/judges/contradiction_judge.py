from typing import Dict, List, Optional, Sequence

from storypack.models.conflicts import CandidatePair, ConflictVerdict
from storypack.models.outcomes import JudgeOutcome
from storypack.prompts.judge_prompts import CONTRADICTION_PROMPT, build_contradiction_message
from storypack.services.judges.base_judge import BaseJudge, clamp_unit
from storypack.utils.json_parser import extract_json_array


class ContradictionJudge(BaseJudge):
    """Decides, per pair index, whether two chunk texts contradict."""

    name = "contradiction_judge"
    max_output_tokens = 1024

    def __init__(self, *args, chunk_chars: int = 400, **kwargs):
        super().__init__(*args, **kwargs)
        self.chunk_chars = chunk_chars

    async def judge(
        self, pairs: Sequence[CandidatePair], project_context: str = ""
    ) -> JudgeOutcome[List[ConflictVerdict]]:
        def parse(raw: str) -> Optional[List[ConflictVerdict]]:
            entries = extract_json_array(raw)
            if entries is None:
                return None

            verdicts: Dict[int, ConflictVerdict] = {}
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                try:
                    index = int(entry.get("index"))
                except (TypeError, ValueError, OverflowError):
                    continue
                if not 0 <= index < len(pairs):
                    continue
                confidence = clamp_unit(entry.get("confidence", 0.5))
                verdicts[index] = ConflictVerdict(
                    pair_index=index,
                    contradicts=entry.get("contradicts") is True,
                    summary=str(entry.get("summary") or ""),
                    confidence=0.5 if confidence is None else confidence,
                )
            return [verdicts[i] for i in sorted(verdicts)]

        message = build_contradiction_message(pairs, self.chunk_chars, project_context)
        return await self._call(CONTRADICTION_PROMPT, message, parse)
