"""Index construction, sealing and reading."""

from __future__ import annotations

import json
import random
import threading
from pathlib import Path

import numpy as np
import pytest

from dilarxiv.errors import IndexIOError, IndexLockedError, IndexUnavailableError
from dilarxiv.fonds import Fond
from dilarxiv.index.analyzer import MAX_TOKEN_BYTES, analyze, fold, index_text, terms
from dilarxiv.index.build import (
    LOCK_NAME,
    MANIFEST_NAME,
    MIN_WRITER_HEAP_BYTES,
    RANK_NAME,
    SEALED_NAME,
    SPOOL_DIR,
    IndexBuilder,
    is_owned_entry,
)
from dilarxiv.index.keys import KeyRecord, KeySpool
from dilarxiv.index.reader import SealedIndex
from dilarxiv.query import QueryEngine


def _uids(index: SealedIndex, query: str) -> list[str]:
    return [document.uid for document in QueryEngine(index).search(query)]


# --------------------------------------------------------------------------- #
# Analyzer
# --------------------------------------------------------------------------- #


def test_fold_and_lowercase():
    assert fold("Séjour des ÉTRANGERS") == "Sejour des ETRANGERS"
    assert terms("Code de l'Entrée et du SÉJOUR") == ["code", "de", "l", "entree", "et", "du", "sejour"]


def test_decomposed_accents_do_not_split_words():
    decomposed = "se\u0301jour"
    assert terms(decomposed) == ["sejour"]


def test_underscore_separates_tokens():
    assert terms("article_L313-11") == ["article", "l313", "11"]


def test_overlong_tokens_are_dropped_but_keep_positions():
    text = "avant " + "x" * MAX_TOKEN_BYTES + " apres"
    assert list(analyze(text)) == [("avant", 0), ("apres", 2)]
    assert terms("x" * (MAX_TOKEN_BYTES - 1)) == ["x" * (MAX_TOKEN_BYTES - 1)]


def test_index_text_is_normalized():
    assert index_text("Code de l'Entrée,  et du SÉJOUR.") == "code de l entree et du sejour"
    assert index_text("") == ""


# --------------------------------------------------------------------------- #
# Key spool
# --------------------------------------------------------------------------- #


def test_key_spool_merges_runs_in_key_order(temp_dir: Path):
    records = [KeyRecord(f"U{i % 7}", "JADE" if i % 2 else "CASS", i, 2000 + i, f"/p/{i}") for i in range(20)]
    shuffled = list(records)
    random.Random(4).shuffle(shuffled)

    spool = KeySpool(temp_dir / "spool", run_size=6)
    for record in shuffled:
        spool.add(record)

    assert spool.run_count == 3
    assert len(spool) == 20
    assert list(spool.merged()) == sorted(records)

    spool.discard()
    assert not (temp_dir / "spool").exists()


def test_key_spool_rejects_empty_runs(temp_dir: Path):
    with pytest.raises(ValueError):
        KeySpool(temp_dir / "spool", run_size=0)


# --------------------------------------------------------------------------- #
# Builder and sealed reader
# --------------------------------------------------------------------------- #


def test_manifest_and_stats(temp_dir: Path, make_document):
    documents = [make_document(f"DOC{i:03d}", f"texte numero {i} commun") for i in range(40)]

    with IndexBuilder(temp_dir / "index", memory_budget_bytes=2048, spool_run_size=8) as builder:
        builder.add_all(documents)

    manifest = json.loads((temp_dir / "index" / MANIFEST_NAME).read_text())
    assert manifest["doc_count"] == 40
    assert manifest["indexed"] == 40
    assert manifest["duplicates"] == 0
    assert builder.stats.spool_runs == 5
    assert builder.stats.segments >= 1
    assert builder.writer_heap_bytes == MIN_WRITER_HEAP_BYTES
    assert not (temp_dir / "index" / LOCK_NAME).exists()
    assert not (temp_dir / "index" / SPOOL_DIR).exists()

    with SealedIndex.open(temp_dir / "index") as index:
        assert index.doc_count == 40
        assert index.segment_count == manifest["segments"]
        assert _uids(index, "commun") == [f"DOC{i:03d}" for i in range(40)]
        assert _uids(index, "17") == ["DOC017"]


def test_every_token_is_findable(build_index, make_document):
    documents = [
        make_document("A", "Le juge des référés", title="Ordonnance"),
        make_document("B", "La cour d'appel de Paris", fond=Fond.CAPP),
    ]
    index_dir = build_index(documents)

    with SealedIndex.open(index_dir) as index:
        for document in documents:
            for term in terms(document.title) + terms(document.content):
                assert document.uid in _uids(index, term), term


def test_rebuild_yields_identical_documents(build_index, make_document):
    documents = [make_document(f"DOC{i}", f"contenu {i}", extra={"ecli": f"E{i}"}) for i in range(10)]

    first = build_index(documents, memory_budget_bytes=256, spool_run_size=3)
    second = build_index(documents, memory_budget_bytes=1 << 26)

    with SealedIndex.open(first) as a, SealedIndex.open(second) as b:
        assert [d.model_dump() for d in a.documents()] == [d.model_dump() for d in b.documents()]
    assert (first / RANK_NAME).read_bytes() == (second / RANK_NAME).read_bytes()


def test_duplicate_keys_are_skipped(temp_dir: Path, make_document):
    with IndexBuilder(temp_dir / "index") as builder:
        builder.add(make_document("SAME", "premier"))
        builder.add(make_document("SAME", "second"))
        builder.add(make_document("SAME", "autre fond", fond=Fond.CASS))

    assert builder.stats.doc_count == 2
    assert builder.stats.indexed == 3
    assert builder.stats.duplicates == 1
    assert builder.summary.counts() == {"index": 1}
    with SealedIndex.open(temp_dir / "index") as index:
        assert index.doc_count == 2
        assert _uids(index, "second") == []
        assert _uids(index, "premier") == ["SAME"]
        assert QueryEngine(index).search("second OR premier").count() == 1


def test_duplicates_are_found_across_spool_runs(temp_dir: Path, make_document):
    documents = [make_document("KEY", "original")]
    documents += [make_document(f"F{i:02d}", "remplissage") for i in range(9)]
    documents.append(make_document("KEY", "copie"))

    with IndexBuilder(temp_dir / "index", spool_run_size=2) as builder:
        builder.add_all(documents)

    assert builder.stats.spool_runs == 5
    assert builder.stats.duplicates == 1
    assert builder.summary.skipped[0].reason == "duplicate uid JADE/KEY"
    with SealedIndex.open(temp_dir / "index") as index:
        assert _uids(index, "original OR copie") == ["KEY"]
        assert QueryEngine(index).search("copie").count() == 0

    ranks = np.fromfile(temp_dir / "index" / RANK_NAME, dtype="<u4")
    assert len(ranks) == 11
    assert ranks[0] == 9
    assert ranks[10] == np.iinfo(np.uint32).max


def test_stored_fields_round_trip(build_index, make_document):
    original = make_document("X1", "corps", title="Titre, avec virgule", extra={"ecli": "ECLI:1"})
    index_dir = build_index([original])

    with SealedIndex.open(index_dir) as index:
        (stored,) = list(index.documents())
        metadata = index.metadata()

    assert stored.uid == "X1"
    assert stored.title == "Titre, avec virgule"
    assert stored.extra == {"ecli": "ECLI:1"}
    assert stored.path == original.path
    assert stored.date == 2020
    assert stored.fond is Fond.JADE
    assert stored.content == ""
    assert metadata.get_fonds() == {"JADE": 1}
    assert metadata.get_year_range() == (2020, 2020)


def test_documents_are_ordered_by_uid_then_fond(build_index, make_document):
    documents = [
        make_document("b", "x"),
        make_document("a", "x", fond=Fond.CASS),
        make_document("a", "x", fond=Fond.CAPP),
    ]
    index_dir = build_index(documents)

    with SealedIndex.open(index_dir) as index:
        assert [(d.uid, d.fond) for d in index.documents()] == [
            ("a", Fond.CAPP),
            ("a", Fond.CASS),
            ("b", Fond.JADE),
        ]
    assert np.fromfile(index_dir / RANK_NAME, dtype="<u4").tolist() == [2, 1, 0]


def test_empty_build_is_sealed(build_index):
    index_dir = build_index([])

    with SealedIndex.open(index_dir) as index:
        assert index.doc_count == 0
        assert _uids(index, "rien") == []
        assert list(index.documents()) == []


def test_concurrent_builder_fails_fast(temp_dir: Path):
    index_dir = temp_dir / "index"
    first = IndexBuilder(index_dir)
    first.open()
    try:
        with pytest.raises(IndexLockedError, match="locked"):
            IndexBuilder(index_dir).open()
    finally:
        first.abort()

    assert not (index_dir / LOCK_NAME).exists()


def test_sealed_directory_is_not_overwritten(build_index, make_document):
    index_dir = build_index([make_document("A", "alpha")])

    with pytest.raises(IndexIOError, match="already holds a sealed index"):
        IndexBuilder(index_dir).open()
    assert not (index_dir / LOCK_NAME).exists()

    with IndexBuilder(index_dir, clear=True) as builder:
        builder.add(make_document("B", "beta"))
    with SealedIndex.open(index_dir) as index:
        assert index.doc_count == 1
        assert _uids(index, "alpha") == []
        assert _uids(index, "beta") == ["B"]


def test_foreign_files_are_never_removed(temp_dir: Path, make_document):
    index_dir = temp_dir / "index"
    index_dir.mkdir()
    (index_dir / "notes.txt").write_text("mes notes", encoding="utf-8")

    with pytest.raises(IndexIOError, match="do not belong to an index"):
        IndexBuilder(index_dir).open()
    with pytest.raises(IndexIOError, match="notes.txt"):
        IndexBuilder(index_dir, clear=True).open()

    assert (index_dir / "notes.txt").read_text(encoding="utf-8") == "mes notes"
    assert not (index_dir / LOCK_NAME).exists()


def test_clear_removes_only_index_files(build_index, make_document):
    index_dir = build_index([make_document("A", "alpha")])
    (index_dir / "notes.txt").write_text("mes notes", encoding="utf-8")

    with pytest.raises(IndexIOError, match="notes.txt"):
        IndexBuilder(index_dir, clear=True).open()

    assert (index_dir / SEALED_NAME).exists()
    assert (index_dir / "notes.txt").exists()


def test_owned_entries():
    assert is_owned_entry("SEALED")
    assert is_owned_entry("tantivy")
    assert is_owned_entry("manifest.json3f9a_x.tmp")
    assert not is_owned_entry("notes.txt")
    assert not is_owned_entry("other.tmp")


def test_aborted_build_is_replaced_without_clear(temp_dir: Path, make_document):
    index_dir = temp_dir / "index"
    builder = IndexBuilder(index_dir)
    builder.open()
    builder.add(make_document("A", "alpha"))
    builder.abort()

    with IndexBuilder(index_dir) as builder:
        builder.add(make_document("B", "beta"))
    with SealedIndex.open(index_dir) as index:
        assert [d.uid for d in index.documents()] == ["B"]


def test_failed_build_leaves_no_seal(temp_dir: Path, make_document):
    index_dir = temp_dir / "index"

    with pytest.raises(RuntimeError, match="boom"):
        with IndexBuilder(index_dir) as builder:
            builder.add(make_document("A", "alpha"))
            raise RuntimeError("boom")

    assert not (index_dir / SEALED_NAME).exists()
    assert not (index_dir / LOCK_NAME).exists()
    with pytest.raises(IndexUnavailableError, match="not sealed"):
        SealedIndex.open(index_dir)


def test_missing_index_is_unavailable(temp_dir: Path):
    with pytest.raises(IndexUnavailableError, match="No index"):
        SealedIndex.open(temp_dir / "nowhere")


def test_schema_mismatch_is_unavailable(build_index, make_document):
    index_dir = build_index([make_document("A", "alpha")])
    marker = json.loads((index_dir / SEALED_NAME).read_text())
    marker["schema_version"] = 999
    (index_dir / SEALED_NAME).write_text(json.dumps(marker))

    with pytest.raises(IndexUnavailableError, match="schema"):
        SealedIndex.open(index_dir)


def test_truncated_rank_table_is_unavailable(build_index, make_document):
    index_dir = build_index([make_document("A", "alpha"), make_document("B", "beta")])
    (index_dir / RANK_NAME).write_bytes(b"\x00\x00\x00\x00")

    with pytest.raises(IndexUnavailableError, match="incomplete"):
        SealedIndex.open(index_dir)


def test_concurrent_readers(build_index, make_document):
    index_dir = build_index([make_document(f"D{i}", f"mot commun {i}") for i in range(50)])
    results: list[int] = []
    lock = threading.Lock()

    def reader() -> None:
        with SealedIndex.open(index_dir) as index:
            count = QueryEngine(index).search("commun").count()
        with lock:
            results.append(count)

    threads = [threading.Thread(target=reader) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [50] * 8
