"""Per-fond XML parsing into the shared document shape."""

from __future__ import annotations

from pathlib import Path

import pytest

from dilarxiv.errors import ParseError, UnknownFondError
from dilarxiv.fonds import Fond
from dilarxiv.ingest.parse import (
    CnilParser,
    JuriParser,
    TexteParser,
    element_text,
    get_parser,
    parse_document,
)
from dilarxiv.ingest.pipeline import ParsePipeline, discover_files


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_parse_conseil_etat_decision(temp_dir: Path, cetatext_xml: str):
    path = _write(temp_dir / "JADE" / "CETATEXT000049314894.xml", cetatext_xml)

    document = parse_document(path, Fond.JADE)

    assert document.uid == "CETATEXT000049314894"
    assert document.fond is Fond.JADE
    assert document.date == 2024
    assert document.title == "Conseil d'État, 2ème - 7ème chambres réunies, 21/03/2024, 490536"
    assert document.path == str(path)
    assert document.extra["ecli"] == "ECLI:FR:CECHR:2024:490536.20240321"
    assert document.extra["jurisdiction"] == "Conseil d'État"
    assert document.extra["number"] == "490536"
    assert document.extra["rapporteur"] == "M. Alexandre Trémolière"
    assert document.extra["government_commissioner"] == "M. Clément Malverti"
    assert document.extra["old_id"] == "JG_L_2024_03_000000490536"
    # Empty optional tags are absent, not empty strings.
    assert "president" not in document.extra
    assert "requester" not in document.extra


def test_content_keeps_line_breaks_and_citations(temp_dir: Path, cetatext_xml: str):
    path = _write(temp_dir / "CETATEXT000049314894.xml", cetatext_xml)

    content = parse_document(path, Fond.JADE).content

    assert content.startswith("Vu la procédure suivante :\nM. A... a demandé")
    assert "code de l'entrée et du séjour des étrangers" in content
    assert content.endswith("CE, 10 juin 2020, n° 430000")
    assert content.count("Vu la procédure suivante") == 1


def test_uid_falls_back_to_file_name(temp_dir: Path):
    path = _write(
        temp_dir / "JURITEXT000007000001.xml",
        "<TEXTE_JURI_JUDI><META><DATE_DEC>1999-12-31</DATE_DEC></META></TEXTE_JURI_JUDI>",
    )

    document = parse_document(path, Fond.CASS)

    assert document.uid == "JURITEXT000007000001"
    assert document.date == 1999
    assert document.title == ""
    assert document.content == ""


def test_year_regex_fallback(temp_dir: Path):
    path = _write(
        temp_dir / "LEGITEXT000006069414.xml",
        "<TEXTE_VERSION><META><ID>LEGITEXT000006069414</ID>"
        "<DATE_SIGNATURE>1804-03-21</DATE_SIGNATURE></META></TEXTE_VERSION>",
    )

    assert parse_document(path, Fond.LEGI).date == 1804


def test_missing_date_is_a_parse_error(temp_dir: Path, juri_xml):
    path = _write(temp_dir / "nodate.xml", juri_xml("X1", date="").replace("<DATE_DEC></DATE_DEC>", ""))

    with pytest.raises(ParseError, match="No date"):
        parse_document(path, Fond.CASS)


def test_malformed_xml_is_a_parse_error(temp_dir: Path):
    path = _write(temp_dir / "bad.xml", "<TEXTE_JURI_JUDI><ID>X</TEXTE_JURI_JUDI")

    with pytest.raises(ParseError, match="Malformed XML"):
        parse_document(path, Fond.CASS)


def test_non_xml_file_is_a_parse_error(temp_dir: Path):
    path = _write(temp_dir / "notes.txt", "plain text")

    with pytest.raises(ParseError):
        parse_document(path, Fond.CASS)


def test_cnil_prefers_full_title(temp_dir: Path):
    path = _write(
        temp_dir / "CNILTEXT000017651971.xml",
        "<TEXTE_CNIL><META><ID>CNILTEXT000017651971</ID>"
        "<TITRE>Délibération 2007-001</TITRE>"
        "<TITREFULL>Délibération 2007-001 du 11 janvier 2007</TITREFULL>"
        "<DATE_TEXTE>2007-01-11</DATE_TEXTE><NATURE_DELIB>Avis</NATURE_DELIB></META>"
        "<CONTENU>La Commission nationale de l'informatique et des libertés</CONTENU>"
        "</TEXTE_CNIL>",
    )

    document = parse_document(path, Fond.CNIL)

    assert document.title == "Délibération 2007-001 du 11 janvier 2007"
    assert document.date == 2007
    assert document.extra["deliberation_nature"] == "Avis"


def test_texte_collects_visas_and_body_once(temp_dir: Path):
    path = _write(
        temp_dir / "JORFTEXT000000000001.xml",
        "<TEXTE_VERSION><META><ID>JORFTEXT000000000001</ID>"
        "<TITREFULL>Décret du 1er janvier 2001</TITREFULL>"
        "<DATE_PUBLI>2001-01-02</DATE_PUBLI></META>"
        "<VISAS><CONTENU>Vu la Constitution</CONTENU></VISAS>"
        "<NOTA><CONTENU>Nota bene</CONTENU></NOTA>"
        "</TEXTE_VERSION>",
    )

    document = parse_document(path, Fond.JORF)

    assert document.content == "Vu la Constitution\n\nNota bene"


def test_parser_registry_is_closed():
    assert isinstance(get_parser(Fond.JADE), JuriParser)
    assert isinstance(get_parser("cass"), JuriParser)
    assert isinstance(get_parser(Fond.CNIL), CnilParser)
    assert isinstance(get_parser(Fond.LEGI), TexteParser)
    with pytest.raises(UnknownFondError):
        get_parser("KALI")


def test_element_text_normalizes_whitespace():
    import xml.etree.ElementTree as ET

    element = ET.fromstring("<C>  un   <b>deux</b>\t trois<br/>quatre  </C>")
    assert element_text(element) == "un deux trois\nquatre"


def test_pipeline_skips_bad_files_and_keeps_order(temp_dir: Path, juri_xml):
    root = temp_dir / "extracted"
    _write(root / "CASS" / "a" / "JURI1.xml", juri_xml("JURI1", content="premier"))
    _write(root / "CASS" / "b" / "broken.xml", "<not-closed>")
    _write(root / "CASS" / "c" / "JURI3.xml", juri_xml("JURI3", content="troisième"))
    _write(root / "JADE" / "CETA1.xml", juri_xml("CETA1", content="admin"))

    pipeline = ParsePipeline(workers=1)
    documents = list(pipeline.iter_documents(discover_files(root, [Fond.CASS, Fond.JADE])))

    assert [d.uid for d in documents] == ["JURI1", "JURI3", "CETA1"]
    assert pipeline.parsed == 3
    assert pipeline.failed == 1
    assert pipeline.summary.counts() == {"parse": 1}
    assert pipeline.summary.skipped[0].item.endswith("broken.xml")


def test_pipeline_with_worker_processes(temp_dir: Path, juri_xml):
    root = temp_dir / "extracted"
    for i in range(12):
        _write(root / "CASS" / f"JURI{i:02d}.xml", juri_xml(f"JURI{i:02d}", content=f"texte {i}"))

    pipeline = ParsePipeline(workers=2, queue_size=3)
    documents = list(pipeline.iter_documents(discover_files(root, [Fond.CASS])))

    assert [d.uid for d in documents] == [f"JURI{i:02d}" for i in range(12)]


def _nested_xml(juri_xml, uid: str, depth: int) -> str:
    return juri_xml(uid, content="<p>" * depth + "profond" + "</p>" * depth)


def _write_bytes(path: Path, payload: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return path


def test_deeply_nested_content_is_parsed(temp_dir: Path, juri_xml):
    path = _write(temp_dir / "CASS" / "DEEP.xml", _nested_xml(juri_xml, "DEEP", 3000))

    document = parse_document(path, Fond.CASS)

    assert document.content == "profond"


def test_unknown_encoding_is_a_parse_error(temp_dir: Path):
    path = _write_bytes(
        temp_dir / "CASS" / "ENC.xml",
        b'<?xml version="1.0" encoding="x-nope"?>\n<TEXTE_JURI_JUDI><DATE_DEC>2020-01-01</DATE_DEC></TEXTE_JURI_JUDI>',
    )

    with pytest.raises(ParseError, match="encoding"):
        parse_document(path, Fond.CASS)


def test_pipeline_survives_nesting_and_encoding_failures(temp_dir: Path, juri_xml):
    root = temp_dir / "extracted"
    _write(root / "CASS" / "a" / "GOOD1.xml", juri_xml("GOOD1", content="avant"))
    _write(root / "CASS" / "b" / "DEEP.xml", _nested_xml(juri_xml, "DEEP", 3000))
    _write_bytes(
        root / "CASS" / "c" / "ENC.xml",
        b'<?xml version="1.0" encoding="x-nope"?>\n<TEXTE_JURI_JUDI/>',
    )
    _write(root / "CASS" / "d" / "GOOD2.xml", juri_xml("GOOD2", content="apres"))

    pipeline = ParsePipeline(workers=1)
    documents = list(pipeline.iter_documents(discover_files(root, [Fond.CASS])))

    assert [d.uid for d in documents] == ["GOOD1", "DEEP", "GOOD2"]
    assert pipeline.failed == 1
    assert pipeline.summary.skipped[0].item.endswith("ENC.xml")
    assert "encoding" in pipeline.summary.skipped[0].reason


def test_unexpected_parser_failure_skips_only_that_file(temp_dir: Path, juri_xml, monkeypatch):
    import dilarxiv.ingest.pipeline as pipeline_module

    root = temp_dir / "extracted"
    _write(root / "CASS" / "a" / "GOOD1.xml", juri_xml("GOOD1", content="avant"))
    _write(root / "CASS" / "b" / "DEEP.xml", juri_xml("DEEP", content="profond"))
    _write(root / "CASS" / "c" / "GOOD2.xml", juri_xml("GOOD2", content="apres"))

    def failing_parse(path: Path, fond: Fond):
        if path.stem == "DEEP":
            raise RecursionError("maximum recursion depth exceeded")
        return parse_document(path, fond)

    monkeypatch.setattr(pipeline_module, "parse_document", failing_parse)

    pipeline = ParsePipeline(workers=1)
    documents = list(pipeline.iter_documents(discover_files(root, [Fond.CASS])))

    assert [d.uid for d in documents] == ["GOOD1", "GOOD2"]
    assert pipeline.summary.counts() == {"parse": 1}
    assert pipeline.summary.skipped[0].reason.startswith("RecursionError while parsing")
