import json
import logging
from pathlib import Path

from revisit.domain.constants import LAST_CARD_SET_FILE
from revisit.domain.models import utc_now
from revisit.domain.ports import LastCardSetStore


class FileLastCardSetStore(LastCardSetStore):
    """Remembers the last selected card set in a small JSON file."""

    def __init__(self, state_dir: Path):
        self.logger = logging.getLogger(__name__)
        self.path = Path(state_dir) / LAST_CARD_SET_FILE

    def save_last_card_set(self, card_set_id: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = {"cardSetId": card_set_id, "savedAt": utc_now().isoformat()}
            self.path.write_text(json.dumps(payload), encoding="utf-8")
        except OSError as e:
            self.logger.warning(f"Failed to save last card set: {e}")

    def load_last_card_set(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            card_set_id = data.get("cardSetId") if isinstance(data, dict) else None
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"Failed to load last card set, clearing it: {e}")
            card_set_id = None

        if not isinstance(card_set_id, str) or not card_set_id:
            self.clear_last_card_set()
            return None
        return card_set_id

    def clear_last_card_set(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning(f"Failed to clear last card set: {e}")
