"""Topic tags for completed Outputs (English content only)."""

import logging
from typing import List

from ..errors import PipelineError
from ..state import MediaKind
from .questions import extract_json

logger = logging.getLogger(__name__)

TAG_GUIDANCE = (
    "List 3 to 6 short topic tags for the text. "
    "Respond with only a JSON array of lowercase strings."
)
MAX_TAGS = 6


class AutoTagger:
    """Derives tags from an Output's script. Always invoked best-effort."""

    def __init__(self, store, text):
        self.store = store
        self.text = text

    def tag(self, kind: MediaKind, output_id: str) -> List[str]:
        output = self.store.get_output(kind, output_id)
        submission = self.store.get_submission(output["submissionId"])
        if (submission.get("language") or "ENGLISH").upper() != "ENGLISH":
            return []

        content = output.get("script") or output.get("transcript") or ""
        if not content.strip():
            return []

        raw = self.text.generate(content, "ENGLISH", guidance=TAG_GUIDANCE)
        try:
            parsed = extract_json(raw)
        except PipelineError:
            parsed = raw.split(",")
        if not isinstance(parsed, list):
            parsed = []

        tags = []
        for item in parsed:
            tag = str(item).strip().strip('"').lower()
            if tag and tag not in tags:
                tags.append(tag)
        tags = tags[:MAX_TAGS]

        self.store.update_output(kind, output_id, tags=tags)
        logger.debug("Tagged %s %s: %s", MediaKind(kind).value, output_id, tags)
        return tags
