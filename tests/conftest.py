"""Pytest configuration and fixtures."""

import gc
import shutil
import tempfile
import time
from collections.abc import Callable, Generator, Iterable
from pathlib import Path

import pytest

from dilarxiv.config import Settings
from dilarxiv.document import Document
from dilarxiv.fonds import Fond
from dilarxiv.index.build import IndexBuilder

CETATEXT_XML = """<?xml version="1.0" encoding="UTF-8"?>
<TEXTE_JURI_ADMIN>
<META>
<META_COMMUN>
<ID>CETATEXT000049314894</ID>
<ANCIEN_ID>JG_L_2024_03_000000490536</ANCIEN_ID>
<ORIGINE>CETAT</ORIGINE>
<URL>texte/juri/admin/CETA/TEXT/00/00/49/31/48/CETATEXT000049314894.xml</URL>
<NATURE>Texte</NATURE>
</META_COMMUN>
<META_SPEC>
<META_JURI>
<TITRE>Conseil d'État, 2ème - 7ème chambres réunies, 21/03/2024, 490536</TITRE>
<DATE_DEC>2024-03-21</DATE_DEC>
<JURIDICTION>Conseil d'État</JURIDICTION>
<NUMERO>490536</NUMERO>
</META_JURI>
<META_JURI_ADMIN>
<DEMANDEUR></DEMANDEUR>
<PRESIDENT></PRESIDENT>
<AVOCATS>SCP BAUER-VIOLAS - FESCHOTTE-DESBOIS - SEBAGH ; SCP MARLANGE, DE LA BURGADE ; SCP SPINOSI</AVOCATS>
<RAPPORTEUR>M. Alexandre Trémolière</RAPPORTEUR>
<COMMISSAIRE_GVT>M. Clément Malverti</COMMISSAIRE_GVT>
<ECLI>ECLI:FR:CECHR:2024:490536.20240321</ECLI>
</META_JURI_ADMIN>
</META_SPEC>
</META>
<TEXTE>
<BLOC_TEXTUEL>
<CONTENU>Vu la procédure suivante :<br/>M. A... a demandé au tribunal administratif
d'annuler l'arrêté portant obligation de quitter le territoire français.<br/><br/>
Vu le code de l'entrée et du séjour des étrangers et du droit d'asile ;</CONTENU>
</BLOC_TEXTUEL>
<CITATION_JP>
<CONTENU>CE, 10 juin 2020, n° 430000</CONTENU>
</CITATION_JP>
</TEXTE>
</TEXTE_JURI_ADMIN>
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    try:
        yield Path(tmpdir)
    finally:
        # Force garbage collection to release any mmapped index files
        gc.collect()
        time.sleep(0.05)
        shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def override_settings(temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide isolated dilarxiv settings scoped to tests."""

    import dilarxiv.config as config_module

    original_settings = getattr(config_module, "_settings", None)

    data_dir = temp_dir / "appdata"
    data_dir.mkdir(parents=True, exist_ok=True)

    settings = config_module.Settings(
        data_dir=data_dir,
        parse_workers=1,
        extract_workers=1,
        download_backoff_seconds=0.0,
    )

    config_module._settings = settings

    try:
        yield settings
    finally:
        config_module._settings = original_settings


@pytest.fixture
def cetatext_xml() -> str:
    return CETATEXT_XML


def _juri_xml(uid: str, *, title: str = "", content: str = "", date: str = "2020-01-01") -> str:
    """Minimal JADE/CASS style XML document."""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<TEXTE_JURI_ADMIN><META><META_COMMUN>"
        f"<ID>{uid}</ID></META_COMMUN><META_SPEC><META_JURI>"
        f"<TITRE>{title}</TITRE><DATE_DEC>{date}</DATE_DEC>"
        "</META_JURI></META_SPEC></META>"
        f"<TEXTE><BLOC_TEXTUEL><CONTENU>{content}</CONTENU></BLOC_TEXTUEL></TEXTE>"
        "</TEXTE_JURI_ADMIN>\n"
    )


def _make_document(
    uid: str,
    content: str = "",
    *,
    title: str = "",
    fond: Fond = Fond.JADE,
    date: int = 2020,
    extra: dict[str, str] | None = None,
) -> Document:
    return Document(
        uid=uid,
        title=title,
        content=content,
        date=date,
        fond=fond,
        extra=extra or {},
        path=f"/data/extracted/{fond.value}/{uid}.xml",
    )


@pytest.fixture
def juri_xml() -> Callable[..., str]:
    return _juri_xml


@pytest.fixture
def make_document() -> Callable[..., Document]:
    return _make_document


@pytest.fixture
def build_index(temp_dir: Path) -> Callable[..., Path]:
    """Build and seal an index over the given documents; returns its directory."""

    counter = 0

    def _build(documents: Iterable[Document], **kwargs) -> Path:
        nonlocal counter
        counter += 1
        index_dir = temp_dir / f"index-{counter}"
        with IndexBuilder(index_dir, **kwargs) as builder:
            builder.add_all(documents)
        return index_dir

    return _build


@pytest.fixture
def ceseda_corpus() -> list[Document]:
    return [
        _make_document("doc1", "Application du CESEDA aux ressortissants."),
        _make_document(
            "doc2",
            "Vu le code de l'entrée et du séjour des étrangers et du droit d'asile.",
        ),
        _make_document("doc3", "Le code civil ne traite pas de cette question."),
    ]
