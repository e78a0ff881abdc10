import io

from crm_app.importer.pipeline.analysis import analyze_csv, estimate_processing_seconds


def test_analyze_reports_headers_preview_and_issues():
    source = io.BytesIO(b"Email,Email,,Name\na@x.com,b@x.com,,Ada\nonly,two\n")

    analysis = analyze_csv(source)
    payload = analysis.as_dict()

    assert payload["delimiter"] == ","
    assert payload["headers"] == ["Email", "Email__1", "column_3", "Name"]
    assert payload["total_rows"] == 2
    assert payload["preview"][0] == {"Email": "a@x.com", "Email__1": "b@x.com", "column_3": "", "Name": "Ada"}
    assert payload["issue_count"] == 3
    assert "Duplicate header 'Email' in column 2 renamed to 'Email__1'." in payload["issues"]
    assert "Column 3 has an empty header; it is addressed as 'column_3'." in payload["issues"]
    assert "Row 2 has 2 columns; expected 4." in payload["issues"]
    assert payload["suggested_mapping"]["mapping"] == {"Email": "email", "Name": "full_name"}
    assert payload["estimated_seconds"] == 1


def test_analyze_limits_preview_rows_and_counts_blank_lines():
    lines = ["name;email"] + [f"Person {index};p{index}@x.com" for index in range(8)] + ["", ";"]
    source = io.BytesIO(("\n".join(lines) + "\n").encode("utf-8"))

    analysis = analyze_csv(source, preview_rows=3)

    assert analysis.delimiter == ";"
    assert len(analysis.preview) == 3
    assert analysis.total_rows == 8
    assert analysis.rows_skipped_blank == 2
    assert analysis.issues == []


def test_analyze_headerless_file_uses_positional_names():
    analysis = analyze_csv(io.BytesIO(b"Ada,ada@x.com\nBob,bob@x.com\n"), has_header=False)

    assert analysis.headers == ("column_1", "column_2")
    assert analysis.suggestion is None
    assert analysis.as_dict()["suggested_mapping"] is None


def test_analyze_reports_undecodable_rows():
    analysis = analyze_csv(io.BytesIO(b"name\nJos\xe9\nAda\n"))

    assert analysis.issue_count == 1
    assert analysis.issues[0].startswith("Row 1: Malformed utf-8 byte sequence")
    assert analysis.preview == [{"name": "Ada"}]


def test_estimate_processing_seconds():
    assert estimate_processing_seconds(0) == 1
    assert estimate_processing_seconds(1000) == 1
    assert estimate_processing_seconds(2500) == 3
