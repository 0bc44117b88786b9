import json
import logging
from pathlib import Path
from typing import Any

import yaml
import yaml.constructor

from revisit.domain.ports import CardSetSource

INDEX_FILE = "card_sets.json"
SUFFIXES = (".json", ".yaml", ".yml")


class UniqueKeyLoader(yaml.SafeLoader):
    """
    YAML loader that forbids duplicate keys.
    """

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"found duplicate key '{key}'", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep)


class DirectoryCardSetSource(CardSetSource):
    """
    Bundled card sets stored as files in a directory.

    Each card set is `{id}.json` (or `.yaml`/`.yml`) holding a list of
    `{"id": ..., "front": {...}, "back": {...}}` cards. An optional
    `card_sets.json` index lists metadata and may point at a different
    `dataFile`; inactive entries are hidden.
    """

    def __init__(self, data_dir: Path):
        self.logger = logging.getLogger(__name__)
        self.data_dir = Path(data_dir)
        self._index: dict[str, dict[str, Any]] | None = None

    def _load_index(self) -> dict[str, dict[str, Any]]:
        if self._index is None:
            path = self.data_dir / INDEX_FILE
            entries = json.loads(path.read_text(encoding="utf-8")) if path.exists() else []
            self._index = {str(e["id"]): e for e in entries if isinstance(e, dict) and "id" in e}
        return self._index

    def card_set_info(self, card_set_id: str) -> dict[str, Any] | None:
        return self._load_index().get(card_set_id)

    def available_card_sets(self) -> list[str]:
        index = self._load_index()
        if index:
            return [cid for cid, meta in index.items() if meta.get("isActive", True)]
        if not self.data_dir.is_dir():
            return []
        return sorted(
            p.stem for p in self.data_dir.iterdir() if p.suffix in SUFFIXES and p.name != INDEX_FILE
        )

    def _resolve(self, card_set_id: str) -> Path | None:
        meta = self.card_set_info(card_set_id)
        if meta and meta.get("dataFile"):
            path = self.data_dir / meta["dataFile"]
            return path if path.exists() else None
        for suffix in SUFFIXES:
            path = self.data_dir / f"{card_set_id}{suffix}"
            if path.exists():
                return path
        return None

    def load_card_set(self, card_set_id: str) -> list[dict[str, Any]] | None:
        """
        Raises:
            ValueError: If the dataset file exists but is malformed.
        """
        path = self._resolve(card_set_id)
        if path is None:
            self.logger.debug(f"No bundled dataset for '{card_set_id}' in {self.data_dir}")
            return None

        raw = path.read_text(encoding="utf-8")
        try:
            if path.suffix == ".json":
                data = json.loads(raw)
            else:
                data = yaml.load(raw, Loader=UniqueKeyLoader)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ValueError(f"Invalid card set data in {path.name}: {e}") from e

        if isinstance(data, dict):
            data = data.get("cards")
        if not isinstance(data, list):
            raise ValueError(f"Invalid card set data in {path.name}: expected a list of cards")

        cards = []
        seen = set()
        for item in data:
            if not isinstance(item, dict) or "id" not in item:
                raise ValueError(f"Invalid card in {path.name}: every card needs an 'id'")
            card_id = str(item["id"])
            if card_id in seen:
                raise ValueError(f"Duplicate card id '{card_id}' in {path.name}")
            seen.add(card_id)
            cards.append(item)

        self.logger.debug(f"Loaded {len(cards)} cards from {path.name}")
        return cards
