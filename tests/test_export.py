"""Path list and CSV materialization of query matches."""

from __future__ import annotations

import csv
import io

import pytest

from dilarxiv.export import csv_columns, write_csv, write_paths


def test_csv_with_comma_in_title(make_document):
    documents = [
        make_document("A1", title="Conseil d'État, 2ème chambre", extra={"ecli": "ECLI:FR:1"}),
        make_document("A2", title='Arrêt "Dupont"'),
    ]
    out = io.StringIO()

    written = write_csv(documents, out, extra_fields=["ecli"])

    lines = out.getvalue().splitlines()
    assert written == 2
    assert len(lines) == 3
    assert lines[0] == "uid,title,date,fond,path,ecli"
    assert lines[1] == (
        'A1,"Conseil d\'État, 2ème chambre",2020,JADE,/data/extracted/JADE/A1.xml,ECLI:FR:1'
    )
    rows = list(csv.reader(io.StringIO(out.getvalue())))
    assert rows[1][1] == "Conseil d'État, 2ème chambre"
    assert rows[2][1] == 'Arrêt "Dupont"'
    assert rows[2][5] == ""


def test_csv_header_is_always_written():
    out = io.StringIO()
    assert write_csv([], out) == 0
    assert out.getvalue() == "uid,title,date,fond,path\n"


def test_csv_columns_keep_requested_order_without_duplicates():
    assert csv_columns(["president", "ecli", "uid", "ecli"]) == [
        "uid",
        "title",
        "date",
        "fond",
        "path",
        "president",
        "ecli",
    ]


def test_path_list_is_capped_at_ten_by_default(make_document):
    documents = [make_document(f"D{i:02d}") for i in range(15)]
    out = io.StringIO()

    assert write_paths(documents, out) == 10
    assert out.getvalue().splitlines() == [d.path for d in documents[:10]]


def test_path_list_full_export(make_document):
    documents = [make_document(f"D{i:02d}") for i in range(15)]
    out = io.StringIO()

    assert write_paths(iter(documents), out, limit=None) == 15
    assert len(out.getvalue().splitlines()) == 15


def test_negative_limit_is_rejected(make_document):
    with pytest.raises(ValueError):
        write_paths([make_document("D")], io.StringIO(), limit=-1)
