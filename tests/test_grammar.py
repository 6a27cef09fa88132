import pytest

from cky import Grammar, GrammarFormatError, Rule


def write_grammar(tmp_path, text, name="test.gr"):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_rules_are_classified(tmp_path):
    path = write_grammar(tmp_path, (
        "# a tiny grammar\n"
        "0\tS\tNP VP\n"
        "-0.5\tNP\tN\n"
        "\n"
        "-1\tN\tdog   # the only noun\n"
        "-2\tVP\tbarks\n"
    ))
    g = Grammar("S", path)
    assert len(g) == 4
    assert g.binary_rules == [Rule("S", ("NP", "VP"), 0.0)]
    assert g.unary_rules("N") == [Rule("NP", ("N",), -0.5)]
    assert g.lexical_rules == [Rule("N", ("dog",), -1.0), Rule("VP", ("barks",), -2.0)]
    assert g.lexical_rules_for("dog") == [Rule("N", ("dog",), -1.0)]
    assert g.lexical_rules_for("cat") == []
    assert g.unary_rules("dog") == []
    assert g.is_nonterminal("NP") and not g.is_nonterminal("dog")


def test_classification_uses_later_files(tmp_path):
    first = write_grammar(tmp_path, "0\tS\tA\n", "first.gr")
    second = write_grammar(tmp_path, "-1\tA\ta\n", "second.gr")

    g = Grammar("S", first)
    assert g.classify(g.rules[0]) == "lexical"

    g.add_rules_from_file(second)
    assert g.classify(g.rules[0]) == "unary"
    assert g.unary_rules("A") == [Rule("S", ("A",), 0.0)]
    assert g.lexical_rules == [Rule("A", ("a",), -1.0)]


def test_duplicates_are_kept():
    g = Grammar("S")
    g.add_rules([Rule("S", ("a",), -1.0), Rule("S", ("a",), -2.0)])
    assert len(g.lexical_rules_for("a")) == 2


def test_probabilities_become_log2_weights(tmp_path):
    path = write_grammar(tmp_path, "0.5\tS\ta\n1\tS\tb\n")
    g = Grammar("S", path, probabilities=True)
    assert [rule.weight for rule in g.rules] == [-1.0, 0.0]


@pytest.mark.parametrize("line", [
    "0\tS\ta b c",        # too many rhs symbols
    "0\tS\t",             # no rhs
    "0 S a",              # not tab-delimited
    "heavy\tS\ta",        # weight is not a number
    "0\t\ta",             # no lhs
])
def test_malformed_lines_name_the_location(tmp_path, line):
    path = write_grammar(tmp_path, f"0\tS\tA B\n{line}\n")
    with pytest.raises(GrammarFormatError, match=r"test\.gr:2:"):
        Grammar("S", path)


@pytest.mark.parametrize("prob", ["0", "1.5", "-0.2"])
def test_bad_probabilities(tmp_path, prob):
    path = write_grammar(tmp_path, f"{prob}\tS\ta\n")
    with pytest.raises(GrammarFormatError):
        Grammar("S", path, probabilities=True)


def test_bad_arity_from_code():
    g = Grammar("S")
    with pytest.raises(GrammarFormatError):
        g.add_rules([Rule("S", ("A", "B", "C"), 0.0)])
    with pytest.raises(ValueError):
        g.add_rules([Rule("S", (), 0.0)])


def test_missing_file(tmp_path):
    with pytest.raises(OSError):
        Grammar("S", tmp_path / "nowhere.gr")


def test_malformed_batch_adds_nothing():
    g = Grammar("S")
    g.add_rules([Rule("S", ("b",), -1.0)])
    with pytest.raises(GrammarFormatError):
        g.add_rules([Rule("S", ("a",), 0.0), Rule("S", ("A", "B", "C"), 0.0)])
    assert len(g) == 1
    assert g.rules == (Rule("S", ("b",), -1.0),)
    assert g.lexical_rules_for("a") == []


def test_undecodable_grammar_file(tmp_path):
    path = tmp_path / "garbled.gr"
    path.write_bytes(b"0\tS\ta\n0\tS\t\xff\n")
    g = Grammar("S")
    with pytest.raises(GrammarFormatError, match="not valid UTF-8"):
        g.add_rules_from_file(path)
    assert len(g) == 0
