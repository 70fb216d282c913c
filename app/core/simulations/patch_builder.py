from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Optional

LANGUAGE_TOGGLE_TYPES = frozenset({"language_toggle", "language_toggle_v2"})

TOGGLE_ACTIVE_PROBABILITY = 0.6
TABLE_ROW_ACTIVE_PROBABILITY = 0.5
TABLE_MAX_ROWS = 5

PATCH_SAMPLE_RATIO = 0.2
PATCH_SAMPLE_MIN = 3
PATCH_SAMPLE_MAX = 10


@dataclass(frozen=True)
class ToggleBlock:
    page_index: int
    block_index: int
    block_id: Optional[str]
    items: list


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _clean_id(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _iter_blocks(template: Any):
    pages = _as_list(template.get("pages")) if isinstance(template, dict) else []
    for page_index, page in enumerate(pages):
        blocks = _as_list(page.get("blocks")) if isinstance(page, dict) else []
        for block_index, block in enumerate(blocks):
            if not isinstance(block, dict):
                continue
            props = block.get("props") if isinstance(block.get("props"), dict) else {}
            yield page_index, block_index, str(block.get("type") or ""), props


def randomize_items(items: list, rng: random.Random, probability: float) -> list:
    """Copy `items` with each item's `active` flag re-rolled."""
    out = []
    for item in items:
        base = dict(item) if isinstance(item, dict) else {"value": item}
        base["active"] = rng.random() < probability
        out.append(base)
    return out


def build_data_patch(template: Any, rng: random.Random) -> dict[str, Any]:
    """Build a full candidate data patch from a gradebook template definition.

    Every language-toggle block and the first rows of every expanded table get
    a randomised language selection; a few generic freeform keys are always
    present so templates without such blocks still produce a patch.
    """
    patch: dict[str, Any] = {}

    for page_index, block_index, block_type, props in _iter_blocks(template):
        block_id = _clean_id(props.get("blockId"))

        if block_type in LANGUAGE_TOGGLE_TYPES:
            items = _as_list(props.get("items"))
            if items:
                key = f"language_toggle_{block_id}" if block_id else f"language_toggle_{page_index}_{block_index}"
                patch[key] = randomize_items(items, rng, TOGGLE_ACTIVE_PROBABILITY)

        if block_type == "table" and props.get("expandedRows"):
            expanded_languages = _as_list(props.get("expandedLanguages"))
            row_languages = props.get("rowLanguages") if isinstance(props.get("rowLanguages"), (dict, list)) else {}
            row_ids = _as_list(props.get("rowIds"))
            row_count = min(len(_as_list(props.get("cells"))), TABLE_MAX_ROWS)

            for row_index in range(row_count):
                if isinstance(row_languages, dict):
                    own = row_languages.get(str(row_index), row_languages.get(row_index))
                else:
                    own = row_languages[row_index] if row_index < len(row_languages) else None
                source = own if isinstance(own, list) else expanded_languages
                if not source:
                    continue

                row_id = _clean_id(row_ids[row_index]) if row_index < len(row_ids) else None
                if block_id and row_id:
                    key = f"table_{block_id}_row_{row_id}"
                else:
                    key = f"table_{page_index}_{block_index}_row_{row_index}"
                patch[key] = randomize_items(source, rng, TABLE_ROW_ACTIVE_PROBABILITY)

    patch["dropdown_1"] = rng.choice(["A", "B", "C"])
    patch["text_1"] = f"Sim_{rng.randrange(10000)}"
    patch["checkbox_1"] = rng.random() < 0.5
    return patch


def sample_patch(patch: dict[str, Any], rng: random.Random) -> dict[str, Any]:
    """Keep a random 20% slice of the keys (at least 3, at most 10)."""
    keys = list(patch)
    take = max(PATCH_SAMPLE_MIN, min(PATCH_SAMPLE_MAX, int(len(keys) * PATCH_SAMPLE_RATIO)))
    chosen = rng.sample(keys, min(take, len(keys)))
    return {k: patch[k] for k in chosen}


def language_toggle_blocks(template: Any) -> list[ToggleBlock]:
    blocks: list[ToggleBlock] = []
    for page_index, block_index, block_type, props in _iter_blocks(template):
        if block_type not in LANGUAGE_TOGGLE_TYPES:
            continue
        items = _as_list(props.get("items"))
        if not items:
            continue
        blocks.append(
            ToggleBlock(
                page_index=page_index,
                block_index=block_index,
                block_id=_clean_id(props.get("blockId")),
                items=items,
            )
        )
    return blocks
