from __future__ import annotations

import pytest

from portfolio_chat import protocol
from portfolio_chat.models import OwnerProfile


def test_decode_without_directive_is_identity():
    text = "  Plain answer with [brackets] and (parens).  "
    env = protocol.decode(text)
    assert env.format == "text"
    assert env.format_data is None
    assert env.text == text.strip()
    # Decoding again changes nothing.
    assert protocol.decode(env.text).text == env.text


def test_decode_table_directive_and_data():
    text = (
        "Here is my stack:\n\n"
        '[format:table][data:{"headers": ["Tool", "Years"], "rows": [["Python", 6], ["Go", 2]]}][/format]'
    )
    env = protocol.decode(text)
    assert env.format == "table"
    assert env.text == "Here is my stack:"
    assert env.format_data == {"headers": ["Tool", "Years"], "rows": [["Python", 6], ["Go", 2]]}


def test_kind_is_case_insensitive():
    env = protocol.decode("Resume attached [FORMAT:PDF][/format]")
    assert env.format == "pdf"
    assert env.text == "Resume attached"
    assert env.format_data is None


def test_first_directive_wins_and_all_are_stripped():
    env = protocol.decode("a [format:table] b [format:contact] c")
    assert env.format == "table"
    assert "[format:" not in env.text


def test_unrecognized_kind_left_in_text():
    env = protocol.decode("keep [format:video] this")
    assert env.format == "text"
    assert env.text == "keep [format:video] this"


def test_unrecognized_kind_before_recognized_one():
    env = protocol.decode("x [format:video] y [format:table][data:[1,2]]")
    assert env.format == "table"
    assert env.format_data == [1, 2]
    assert "[format:video]" in env.text


def test_data_token_with_brackets_inside_strings():
    text = '[format:table][data:{"rows": [["a]b", "c[d"]], "note": "x]y"}][/format] done'
    env = protocol.decode(text)
    assert env.format_data == {"rows": [["a]b", "c[d"]], "note": "x]y"}
    assert env.text == "done"


def test_data_token_spans_newlines():
    text = '[format:table][data:{\n  "headers": ["A"],\n  "rows": [["1"]]\n}]'
    env = protocol.decode(text)
    assert env.format_data == {"headers": ["A"], "rows": [["1"]]}


def test_sanitizes_loose_json():
    text = "[format:table][data:{headers: ['Name', 'It\\'s'], rows: [['x', 1],],}][/format]"
    env = protocol.decode(text)
    assert env.format == "table"
    assert env.format_data == {"headers": ["Name", "It's"], "rows": [["x", 1]]}


def test_unparseable_data_degrades_to_none():
    env = protocol.decode("Hi [format:table][data:{not json at all: ][/format]")
    assert env.format == "table"
    assert env.format_data is None


def test_encode_rejects_unknown_kind():
    with pytest.raises(ValueError):
        protocol.encode("x", "video", {})


def test_encode_then_decode_table():
    data = {"headers": ["k"], "rows": [["v"]]}
    env = protocol.decode(protocol.encode("Answer", "table", data))
    assert (env.text, env.format, env.format_data) == ("Answer", "table", data)


def test_contact_round_trip():
    profile = OwnerProfile(name="Ada", email="ada@example.com")
    payload = protocol.build_contact_payload(profile)
    text = protocol.encode_contact("Happy to chat!", payload, profile.email)

    env = protocol.decode(text)
    assert env.format == "contact"
    assert env.format_data == payload
    assert env.text.startswith("Happy to chat!")
    assert "ada@example.com" in env.text
    assert "[data:" not in env.text


def test_contact_payload_channels():
    payload = protocol.build_contact_payload(OwnerProfile(email="me@example.com"))
    platforms = [link["platform"] for link in payload["socialLinks"]]
    assert platforms == ["LinkedIn", "GitHub", "Email"]
    assert payload["socialLinks"][2]["url"] == "mailto:me@example.com"


def test_iter_fragments():
    assert list(protocol.iter_fragments("abcdefgh", 3)) == ["abc", "def", "gh"]
    assert list(protocol.iter_fragments("", 3)) == []
    with pytest.raises(ValueError):
        list(protocol.iter_fragments("abc", 0))


def test_every_data_token_is_stripped():
    env = protocol.decode("Two tables [format:table][data:[1,2]] and [data:{\"a\": [3]}][/format] end")
    assert env.format == "table"
    assert env.format_data == [1, 2]
    assert "[data:" not in env.text
    assert env.text == "Two tables  and  end"


def test_offsets_survive_case_folding_that_changes_length():
    # "İ".lower() is two code points long.
    env = protocol.decode("İİİİ answer [format:table][data:[1,2]][/format]")
    assert env.format == "table"
    assert env.format_data == [1, 2]
    assert env.text == "İİİİ answer"


def test_mixed_case_tokens_after_non_ascii_text():
    env = protocol.decode("İstanbul [FORMAT:Table][DATA:[\"x\"]][/FORMAT]")
    assert env.format == "table"
    assert env.format_data == ["x"]
    assert env.text == "İstanbul"


def test_strip_directives_removes_all_blocks():
    text = 'See [format:table][data:{"rows": []}][/format] and [data:[1]] here [format:video]'
    assert protocol.strip_directives(text) == "See  and  here [format:video]"
