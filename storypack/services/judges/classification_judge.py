from typing import Dict, List, Optional, Sequence
from uuid import UUID

from storypack.models.evidence import ChunkClassification, ChunkInput, ClassificationTag
from storypack.models.outcomes import JudgeOutcome
from storypack.prompts.judge_prompts import CLASSIFICATION_PROMPT, build_classification_message
from storypack.services.judges.base_judge import BaseJudge, clamp_unit
from storypack.utils.json_parser import extract_json_array
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ClassificationJudge(BaseJudge):
    """Tags a batch of chunks with one label from the closed vocabulary.

    Entries naming an id outside the batch or a tag outside the vocabulary
    are dropped; chunks the judge skipped are simply absent from the result.
    """

    name = "classification_judge"
    max_output_tokens = 1024

    def __init__(self, *args, chunk_chars: int = 800, **kwargs):
        super().__init__(*args, **kwargs)
        self.chunk_chars = chunk_chars

    async def classify(self, chunks: Sequence[ChunkInput]) -> JudgeOutcome[List[ChunkClassification]]:
        known_ids: Dict[str, UUID] = {str(chunk.id): chunk.id for chunk in chunks}

        def parse(raw: str) -> Optional[List[ChunkClassification]]:
            entries = extract_json_array(raw)
            if entries is None:
                return None

            verdicts: Dict[UUID, ChunkClassification] = {}
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                chunk_id = known_ids.get(str(entry.get("chunk_id") or entry.get("chunkId") or "").strip())
                tag = ClassificationTag.parse(entry.get("tag"))
                confidence = clamp_unit(entry.get("confidence", 0.5))
                if chunk_id is None or tag is None or confidence is None:
                    LOGGER.debug("Dropping classification entry", extra={"entry": str(entry)[:200]})
                    continue
                verdicts[chunk_id] = ChunkClassification(chunk_id=chunk_id, tag=tag, confidence=confidence)
            return list(verdicts.values())

        message = build_classification_message(chunks, self.chunk_chars)
        return await self._call(CLASSIFICATION_PROMPT, message, parse)
