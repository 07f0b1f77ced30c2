from utils.framing import document_room_code, parse_records, split_records


def test_split_records_handles_multiple_documents_and_blank_lines():
    raw = '{"type":"A"}\n\n  {"type":"B"}  \n'
    assert split_records(raw) == ['{"type":"A"}', '{"type":"B"}']


def test_split_records_decodes_bytes():
    assert split_records(b'{"type":"A"}\n{"type":"B"}') == ['{"type":"A"}', '{"type":"B"}']


def test_parse_records_skips_only_the_bad_record():
    raw = '{"type":"A"}\nnot json at all\n[1, 2]\n{"type":"B"}'
    docs, skipped = parse_records(raw)
    assert [d["type"] for d in docs] == ["A", "B"]
    assert skipped == 2


def test_parse_records_empty_delivery():
    assert parse_records("") == ([], 0)


def test_document_room_code_top_level_and_payload():
    assert document_room_code({"type": "X", "roomCode": "ABC123"}) == "ABC123"
    assert document_room_code({"type": "X", "payload": {"roomCode": "XYZ999"}}) == "XYZ999"
    assert document_room_code({"type": "X", "payload": {}}) is None
    assert document_room_code({"type": "X", "payload": None}) is None
