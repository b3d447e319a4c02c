from maestro.services.response_parser import parse_reply, strip_bracketed


def _as_tuples(pairs):
    return [(p.target, p.native) for p in pairs]


def test_target_line_binds_following_native_line():
    assert _as_tuples(parse_reply("T\n[XX] N", "[XX]")) == [("T", "N")]


def test_unmatched_text_becomes_single_pair():
    assert _as_tuples(parse_reply("hello", "[XX]")) == [("hello", "")]


def test_multiple_pairs_keep_order_and_skip_blank_lines():
    raw = "  Hola  \n\n[EN] Hello\n\nAdiós\n[EN]   Goodbye  \n"
    assert _as_tuples(parse_reply(raw, "[EN]")) == [("Hola", "Hello"), ("Adiós", "Goodbye")]


def test_target_without_translation_gets_empty_native():
    raw = "Uno\nDos\n[EN] Two"
    assert _as_tuples(parse_reply(raw, "[EN]")) == [("Uno", ""), ("Dos", "Two")]


def test_orphan_translation_gets_empty_target():
    raw = "[EN] Hello first\nHola"
    assert _as_tuples(parse_reply(raw, "[EN]")) == [("", "Hello first"), ("Hola", "")]


def test_second_prefixed_line_does_not_steal_bound_target():
    raw = "Hola\n[EN] Hello\n[EN] Extra"
    assert _as_tuples(parse_reply(raw, "[EN]")) == [("Hola", "Hello"), ("", "Extra")]


def test_empty_input_yields_nothing():
    assert parse_reply("", "[EN]") == []
    assert parse_reply("   \n  ", "[EN]") == []


def test_parse_is_pure():
    raw = "Hola\n[EN] Hello"
    assert parse_reply(raw, "[EN]") == parse_reply(raw, "[EN]")


def test_strip_bracketed_removes_annotations():
    assert strip_bracketed("[laughs] hola   [noise] amigo ") == "hola amigo"
    assert strip_bracketed("[inaudible]") == ""
