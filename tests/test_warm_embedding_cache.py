"""Tests for scripts/warm_embedding_cache.py"""

import importlib.util
import json
from pathlib import Path

import pytest

_SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "warm_embedding_cache.py"


@pytest.fixture(scope="module")
def warm_script():
    spec = importlib.util.spec_from_file_location("warm_embedding_cache", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_read_concepts_skips_blanks_comments_and_repeats(warm_script, tmp_path):
    source = tmp_path / "concepts.txt"
    source.write_text("# header\nGraph Theory\n\n  Topology  \nGraph Theory\n", encoding="utf-8")

    assert warm_script.read_concepts([str(source)]) == ["Graph Theory", "Topology"]


def test_main_writes_snapshot_and_merges(warm_script, tmp_path, capsys):
    first = tmp_path / "a.txt"
    second = tmp_path / "b.txt"
    output = tmp_path / "out" / "cache.json"
    first.write_text("alpha\nbeta\n", encoding="utf-8")
    second.write_text("gamma\n", encoding="utf-8")

    assert warm_script.main([str(first), "--output", str(output), "--backend", "hash"]) == 0
    assert set(json.loads(output.read_text())["entries"]) == {"alpha", "beta"}

    assert warm_script.main([str(second), "--output", str(output), "--backend", "hash", "--merge"]) == 0
    assert set(json.loads(output.read_text())["entries"]) == {"alpha", "beta", "gamma"}
    assert "Wrote 3 embeddings" in capsys.readouterr().out


def test_main_fails_without_concepts(warm_script, tmp_path):
    empty = tmp_path / "empty.txt"
    empty.write_text("\n# nothing\n", encoding="utf-8")

    assert warm_script.main([str(empty), "--output", str(tmp_path / "x.json")]) == 1
