import pytest

from grbl_streamer.gcode_tokenizer import (
    Checksum,
    Comment,
    EndOfLine,
    LineNumber,
    Word,
    tokenize_line,
)
from grbl_streamer.utils.exceptions import LexError

pytestmark = pytest.mark.unit


def words(tokens):
    return [(t.letter, t.value) for t in tokens if isinstance(t, Word)]


def test_simple_line_ends_with_end_of_line():
    tokens = tokenize_line("G1 X10 Y-2.5 F500")
    assert isinstance(tokens[-1], EndOfLine)
    assert words(tokens) == [("G", 1.0), ("X", 10.0), ("Y", -2.5), ("F", 500.0)]


def test_lowercase_and_packed_words():
    assert words(tokenize_line("g0x1.5y.5z-.25")) == [
        ("G", 0.0), ("X", 1.5), ("Y", 0.5), ("Z", -0.25),
    ]


def test_space_between_letter_and_number_is_allowed():
    assert words(tokenize_line("G 1 X 10")) == [("G", 1.0), ("X", 10.0)]


def test_word_keeps_source_text_and_column():
    tokens = tokenize_line("G01 X010.500")
    g, x = tokens[0], tokens[1]
    assert g.text == "01" and g.column == 1
    assert x.text == "010.500" and x.column == 5


def test_comments_both_styles():
    tokens = tokenize_line("G0 (rapid move) X1 ; trailing note")
    comments = [t.text for t in tokens if isinstance(t, Comment)]
    assert comments == ["rapid move", "trailing note"]
    assert words(tokens) == [("G", 0.0), ("X", 1.0)]


def test_comment_only_and_blank_lines():
    assert tokenize_line("") == [EndOfLine()]
    assert tokenize_line("   ") == [EndOfLine()]
    tokens = tokenize_line("(just a comment)")
    assert isinstance(tokens[0], Comment)
    assert isinstance(tokens[1], EndOfLine)


def test_percent_line_is_empty():
    assert tokenize_line("%") == [EndOfLine()]
    assert tokenize_line("  % program start") == [EndOfLine()]


def test_byte_order_mark_is_skipped():
    assert words(tokenize_line("\ufeffG21")) == [("G", 21.0)]


def test_line_number_and_checksum():
    tokens = tokenize_line("N10 G1 X1*57")
    assert tokens[0] == LineNumber(10, 1)
    assert any(isinstance(t, Checksum) and t.value == 57 for t in tokens)


def test_unterminated_comment_reports_column():
    with pytest.raises(LexError) as info:
        tokenize_line("G1 X1 (oops", line_index=4)
    assert info.value.column == 7
    assert info.value.line_index == 4
    assert "unterminated comment" in str(info.value)


def test_dollar_command_is_rejected():
    with pytest.raises(LexError) as info:
        tokenize_line("$H")
    assert info.value.column == 1


def test_invalid_character():
    with pytest.raises(LexError) as info:
        tokenize_line("G1 X1 #5")
    assert info.value.column == 7


def test_letter_without_number():
    with pytest.raises(LexError):
        tokenize_line("G1 X")


def test_fractional_line_number_is_rejected():
    with pytest.raises(LexError):
        tokenize_line("N1.5 G0 X1")
