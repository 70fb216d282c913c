import random

import pytest

from app.core.simulations.patch_builder import (
    build_data_patch,
    language_toggle_blocks,
    randomize_items,
    sample_patch,
)


def _template() -> dict:
    return {
        "pages": [
            {
                "blocks": [
                    {"type": "text", "props": {"content": "intro"}},
                    {
                        "type": "language_toggle",
                        "props": {"blockId": "lt-a", "items": [{"code": "fr"}, {"code": "ar"}]},
                    },
                ]
            },
            {
                "blocks": [
                    {"type": "language_toggle_v2", "props": {"items": [{"code": "en"}]}},
                    {"type": "language_toggle", "props": {"blockId": "empty", "items": []}},
                    {
                        "type": "table",
                        "props": {
                            "blockId": "tbl",
                            "expandedRows": True,
                            "expandedLanguages": [{"code": "fr"}],
                            "rowLanguages": {"1": [{"code": "ar"}, {"code": "en"}]},
                            "rowIds": ["row-a", "row-b"],
                            "cells": [[1], [2], [3], [4], [5], [6], [7]],
                        },
                    },
                    {"type": "table", "props": {"expandedRows": False, "cells": [[1]]}},
                ]
            },
        ]
    }


def test_build_data_patch_covers_toggles_tables_and_generic_keys():
    patch = build_data_patch(_template(), random.Random(1))

    assert "language_toggle_lt-a" in patch
    # No blockId: positional key.
    assert "language_toggle_1_0" in patch
    # Empty toggle blocks are skipped.
    assert "language_toggle_empty" not in patch

    assert "table_tbl_row_row-a" in patch
    assert "table_tbl_row_row-b" in patch
    # Rows beyond the known ids fall back to positional keys, capped at 5 rows.
    assert "table_1_2_row_4" in patch
    assert "table_1_2_row_5" not in patch
    assert [i["code"] for i in patch["table_tbl_row_row-b"]] == ["ar", "en"]

    assert patch["dropdown_1"] in {"A", "B", "C"}
    assert patch["text_1"].startswith("Sim_")
    assert isinstance(patch["checkbox_1"], bool)


def test_build_data_patch_without_template_still_has_generic_keys():
    assert set(build_data_patch(None, random.Random(0))) == {"dropdown_1", "text_1", "checkbox_1"}


def test_randomize_items_copies_and_sets_active():
    items = [{"code": "fr", "active": True}, "raw"]
    out = randomize_items(items, random.Random(3), 0.6)

    assert all(isinstance(i["active"], bool) for i in out)
    assert out[0]["code"] == "fr"
    assert out[1]["value"] == "raw"
    # Source items are not mutated.
    assert items[0] == {"code": "fr", "active": True}


def test_randomize_items_probability_extremes():
    items = [{"code": str(i)} for i in range(20)]
    assert all(i["active"] for i in randomize_items(items, random.Random(0), 1.0))
    assert not any(i["active"] for i in randomize_items(items, random.Random(0), 0.0))


@pytest.mark.parametrize(
    "n_keys, expected",
    [(2, 2), (3, 3), (10, 3), (20, 4), (34, 6), (50, 10), (200, 10)],
)
def test_sample_patch_size(n_keys, expected):
    patch = {f"k{i}": i for i in range(n_keys)}
    sampled = sample_patch(patch, random.Random(7))

    assert len(sampled) == expected
    assert all(patch[k] == v for k, v in sampled.items())


def test_language_toggle_blocks_positions():
    blocks = language_toggle_blocks(_template())

    assert [(b.page_index, b.block_index, b.block_id) for b in blocks] == [(0, 1, "lt-a"), (1, 0, None)]
    assert language_toggle_blocks({"pages": "nope"}) == []
