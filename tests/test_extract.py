"""Streaming extraction of (nested) DILA archives."""

from __future__ import annotations

import gzip
import io
import os
import tarfile
from pathlib import Path

import pytest

import dilarxiv.ingest.extract as extract_module
from dilarxiv.errors import ExtractionIOError
from dilarxiv.fonds import Fond
from dilarxiv.ingest.extract import ArchiveExtractor, extract_fond, extract_tarballs


def _tar_bytes(members: dict[str, bytes], *, compress: bool = True) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz" if compress else "w") as tar:
        for name, payload in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def _write_archive(tarball_dir: Path, fond: Fond, name: str, members: dict[str, bytes]) -> Path:
    archive = tarball_dir / fond.value / name
    archive.parent.mkdir(parents=True, exist_ok=True)
    archive.write_bytes(_tar_bytes(members))
    return archive


def _leaves(root: Path) -> list[str]:
    return sorted(
        str(p.relative_to(root))
        for p in root.rglob("*")
        if p.is_file() and ".state" not in p.parts
    )


def test_one_corrupt_entry_among_ten(temp_dir: Path):
    members = {f"juri/doc{i}.xml": f"<DOC>{i}</DOC>".encode() for i in range(9)}
    members["juri/broken.xml.gz"] = b"this is not gzip data at all"
    archive = _write_archive(temp_dir / "tarball", Fond.CASS, "CASS_20240102-201503.tar.gz", members)

    extractor = ArchiveExtractor(archive, temp_dir / "extracted" / "CASS")
    report = extractor.run()

    assert extractor.completed
    assert report.leaves_written == 9
    assert len(report.failures) == 1
    assert report.failures[0].member == "juri/broken.xml.gz"
    assert len(_leaves(temp_dir / "extracted" / "CASS")) == 9


def test_gzip_members_are_decompressed(temp_dir: Path):
    archive = _write_archive(
        temp_dir / "tarball",
        Fond.JADE,
        "JADE_20240102-201503.tar.gz",
        {"a/doc.xml.gz": gzip.compress(b"<DOC/>")},
    )

    ArchiveExtractor(archive, temp_dir / "out").run()

    assert (temp_dir / "out" / "a" / "doc.xml").read_bytes() == b"<DOC/>"


def test_nested_archives_are_unwrapped(temp_dir: Path):
    inner = _tar_bytes({"a/b.xml": b"<B/>", "c.xml": b"<C/>"})
    archive = _write_archive(
        temp_dir / "tarball",
        Fond.LEGI,
        "LEGI_20240102-201503.tar.gz",
        {"juri/inner.tar.gz": inner, "top.xml": b"<T/>"},
    )

    report = ArchiveExtractor(archive, temp_dir / "out").run()

    assert report.leaves_written == 3
    assert _leaves(temp_dir / "out") == ["juri/a/b.xml", "juri/c.xml", "top.xml"]


def test_path_traversal_member_is_skipped(temp_dir: Path):
    archive = _write_archive(
        temp_dir / "tarball",
        Fond.CASS,
        "CASS_20240102-201503.tar.gz",
        {"../evil.xml": b"<EVIL/>", "ok.xml": b"<OK/>"},
    )

    report = ArchiveExtractor(archive, temp_dir / "out").run()

    assert report.leaves_written == 1
    assert len(report.failures) == 1
    assert "traversal" in report.failures[0].reason.lower()
    assert not (temp_dir / "evil.xml").exists()


def test_truncated_archive_is_reported_and_not_marked_done(temp_dir: Path):
    tarball_dir = temp_dir / "tarball"
    archive = _write_archive(
        tarball_dir,
        Fond.CASS,
        "CASS_20240102-201503.tar.gz",
        {"doc0.xml": os.urandom(32768), "doc1.xml": b"<DOC/>"},
    )
    payload = archive.read_bytes()
    archive.write_bytes(payload[: len(payload) // 2])

    report = extract_fond(tarball_dir, temp_dir / "extracted", Fond.CASS)

    assert report.archives_processed == []
    assert any(failure.member is None for failure in report.failures)
    assert not (temp_dir / "extracted" / ".state" / "CASS" / f"{archive.name}.done").exists()


def test_extraction_is_idempotent(temp_dir: Path):
    tarball_dir = temp_dir / "tarball"
    extracted_dir = temp_dir / "extracted"
    _write_archive(
        tarball_dir,
        Fond.CASS,
        "CASS_20240102-201503.tar.gz",
        {"a.xml": b"<A/>", "b.xml": b"<B/>"},
    )

    first = extract_fond(tarball_dir, extracted_dir, Fond.CASS)
    second = extract_fond(tarball_dir, extracted_dir, Fond.CASS)
    forced = extract_fond(tarball_dir, extracted_dir, Fond.CASS, force=True)

    assert first.leaves_written == 2
    assert second.archives_skipped == ["CASS_20240102-201503.tar.gz"]
    assert second.leaves_written == 0
    assert forced.leaves_written == 0
    assert forced.leaves_unchanged == 2
    assert _leaves(extracted_dir / "CASS") == ["a.xml", "b.xml"]


def test_later_archives_overwrite_earlier_leaves(temp_dir: Path):
    tarball_dir = temp_dir / "tarball"
    extracted_dir = temp_dir / "extracted"
    _write_archive(tarball_dir, Fond.CASS, "CASS_20240101-000000.tar.gz", {"a.xml": b"v1"})
    _write_archive(tarball_dir, Fond.CASS, "CASS_20240201-000000.tar.gz", {"a.xml": b"v2"})

    extract_tarballs(tarball_dir, extracted_dir, [Fond.CASS, Fond.JADE], max_workers=2)

    assert (extracted_dir / "CASS" / "a.xml").read_bytes() == b"v2"


def test_disk_write_failure_is_fatal_not_corruption(temp_dir: Path, monkeypatch):
    archive = _write_archive(
        temp_dir / "tarball", Fond.CASS, "CASS_20240102-201503.tar.gz", {"juri/doc.xml": b"<DOC/>"}
    )

    def full_disk(stream, destination):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(extract_module, "_write_leaf", full_disk)
    extractor = ArchiveExtractor(archive, temp_dir / "extracted" / "CASS")

    with pytest.raises(ExtractionIOError, match="No space left on device"):
        extractor.run()
    assert not extractor.completed
    assert extractor.report.failures == []


def test_unreadable_archive_is_reported_as_such(temp_dir: Path):
    missing = temp_dir / "tarball" / "CASS" / "CASS_20240102-201503.tar.gz"

    extractor = ArchiveExtractor(missing, temp_dir / "extracted" / "CASS")
    report = extractor.run()

    assert not extractor.completed
    assert report.failures[0].reason.startswith("cannot read archive")
