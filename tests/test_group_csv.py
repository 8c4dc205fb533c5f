import base64
import io
import uuid
from datetime import datetime

import pandas as pd
import pytest

from racereg.services import group_csv
from racereg.services.group_csv import (
    TEMPLATE_HEADERS,
    TabularParseError,
    missing_headers,
    parse_add_on_selections,
    parse_csv,
    parse_upload,
    parse_xlsx,
    stored_add_on_selections,
    template_csv,
)

OPTION = str(uuid.uuid4())


def test_csv_with_bom_quotes_and_blank_lines():
    text = '\ufefffirstName,lastName,email,dateOfBirth,distanceLabel\n\n"Ana, Jr.",Perez,ana@example.com,1990-01-15,10K\n,,,,\n'
    table = parse_csv(text)
    assert table.headers == ["firstName", "lastName", "email", "dateOfBirth", "distanceLabel"]
    assert table.rows == [["Ana, Jr.", "Perez", "ana@example.com", "1990-01-15", "10K"]]
    assert missing_headers(table) == []


def test_unterminated_quote_is_unreadable():
    with pytest.raises(TabularParseError):
        parse_csv('firstName,lastName\n"Ana,Perez\n')


def test_missing_headers_reports_distance_as_one_requirement():
    table = parse_csv("firstName,email\nAna,ana@example.com\n")
    assert missing_headers(table) == ["lastName", "dateOfBirth", "distanceId|distanceLabel"]


def test_duplicate_header_first_occurrence_wins():
    table = parse_csv("email,email\nfirst@example.com,second@example.com\n")
    index = table.header_index()
    assert group_csv.cell(table.rows[0], index, "email") == "first@example.com"
    assert group_csv.cell(table.rows[0], index, "phone") == ""


def test_empty_upload():
    with pytest.raises(TabularParseError):
        parse_upload(csv_text="", xlsx_base64=None)


def test_xlsx_round_trips_through_the_same_row_shape():
    frame = pd.DataFrame(
        [
            ["firstName", "lastName", "email", "dateOfBirth", "phone", "distanceLabel"],
            ["Ana", "Perez", "ana@example.com", datetime(1990, 1, 15), 5551234, "10K"],
            [None, None, None, None, None, None],
        ]
    )
    buf = io.BytesIO()
    frame.to_excel(buf, header=False, index=False, engine="openpyxl")
    table = parse_xlsx(base64.b64encode(buf.getvalue()).decode("ascii"))
    assert table.headers[:4] == ["firstName", "lastName", "email", "dateOfBirth"]
    assert table.rows == [["Ana", "Perez", "ana@example.com", "1990-01-15", "5551234", "10K"]]


def test_xlsx_rejects_bad_base64_and_garbage():
    with pytest.raises(TabularParseError):
        parse_xlsx("not base64 at all!")
    with pytest.raises(TabularParseError):
        parse_xlsx(base64.b64encode(b"plain text, not a workbook").decode("ascii"))


def test_add_on_selections_defaults_and_errors():
    assert parse_add_on_selections("") == []
    picks = parse_add_on_selections(f'[{{"optionId": "{OPTION.upper()}"}}]')
    assert [(p.option_id, p.quantity) for p in picks] == [(OPTION, 1)]

    assert parse_add_on_selections("{oops") == "addOnSelections must be valid JSON"
    assert parse_add_on_selections('{"optionId": "x"}') == "addOnSelections must be a JSON array"
    assert parse_add_on_selections('["x"]') == "addOnSelections must be an array of objects"
    assert parse_add_on_selections('[{"optionId": "x"}]') == "addOnSelections.optionId must be a UUID"
    assert (
        parse_add_on_selections(f'[{{"optionId": "{OPTION}", "quantity": 0}}]')
        == "addOnSelections.quantity must be a positive integer"
    )
    assert (
        parse_add_on_selections(f'[{{"optionId": "{OPTION}"}}, {{"optionId": "{OPTION}", "quantity": 2}}]')
        == "addOnSelections contains duplicate optionId values"
    )


@pytest.mark.parametrize("raw,quantity", [("2.0", 2), ("3", 3), ("2.5", 1), ("\"2\"", 1), ("true", 1)])
def test_add_on_quantity_accepts_whole_numbers_only(raw, quantity):
    picks = parse_add_on_selections(f'[{{"optionId": "{OPTION}", "quantity": {raw}}}]')
    assert picks[0].quantity == quantity
    assert isinstance(picks[0].quantity, int)


def test_stored_selections_reject_corrupt_shapes():
    assert stored_add_on_selections(None) == []
    assert stored_add_on_selections({"optionId": OPTION}) is None
    assert stored_add_on_selections([{"optionId": "nope"}]) is None
    assert stored_add_on_selections([{"optionId": OPTION, "quantity": 3}])[0].quantity == 3


def test_template_lists_headers_and_example():
    lines = template_csv("21K").splitlines()
    assert lines[0].split(",") == list(TEMPLATE_HEADERS)
    example = lines[1].split(",")
    assert len(example) == len(TEMPLATE_HEADERS)
    assert example[TEMPLATE_HEADERS.index("distanceLabel")] == "21K"
    assert example[TEMPLATE_HEADERS.index("dateOfBirth")] == "1990-01-15"
