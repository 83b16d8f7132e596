from qr_payload import clean_text, parse_qr_payload, tokenize


def test_parses_full_label():
    c = parse_qr_payload("RAILCO123456789 SAR60 R260LHT UIC 60 18m")
    assert c.serial == "RAILCO123456789"
    assert c.grade == "SAR60"
    assert c.rail_type == "R260LHT"
    assert c.spec == "UIC 60"
    assert c.length_m == "18m"


def test_repeated_rail_type_does_not_fill_grade():
    c = parse_qr_payload("R260HT R260HT")
    assert c.rail_type == "R260HT"
    assert c.grade == ""
    assert c.serial == ""
    assert not c.has_serial


def test_prefers_long_serial_over_short_one():
    c = parse_qr_payload("AB123456 RAILCO1234567890 SAR48")
    assert c.serial == "RAILCO1234567890"


def test_falls_back_to_eight_char_serial():
    c = parse_qr_payload("SAR48|AB123456|R260")
    assert c.serial == "AB123456"
    assert c.grade == "SAR48"
    assert c.rail_type == "R260"


def test_lowercase_grade_and_type_are_uppercased():
    c = parse_qr_payload("RAILCO123456789 sar48 r350lht")
    assert c.grade == "SAR48"
    assert c.rail_type == "R350LHT"


def test_spec_with_alphanumeric_designation():
    c = parse_qr_payload("RAILCO123456789 ATA 2DX066-25 36m")
    assert c.spec == "ATA 2DX066-25"
    assert c.length_m == "36m"


def test_spec_prefix_without_designation():
    c = parse_qr_payload("RAILCO123456789 UIC 25m")
    assert c.spec == "UIC"
    assert c.length_m == "25m"


def test_no_serial_returns_empty_candidate_fields():
    c = parse_qr_payload("hello world")
    assert c.serial == ""
    assert c.raw == "hello world"


def test_empty_and_none_input():
    assert parse_qr_payload("").serial == ""
    assert parse_qr_payload(None).raw == ""


def test_non_printable_characters_are_stripped():
    assert clean_text("RAILCO123456789\x00\x1d  SAR60\r\n") == "RAILCO123456789 SAR60"
    assert tokenize("A|B,C:D/E  F") == ["A", "B", "C", "D", "E", "F"]


def test_parse_is_idempotent_on_cleaned_text():
    raw = "  RAILCO123456789\t|SAR60, R260LHT\x00 UIC 60 / 18m "
    first = parse_qr_payload(raw)
    again = parse_qr_payload(first.raw)
    assert again == first
