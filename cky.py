#!/usr/bin/env python3
"""
Find the highest-weight parse of each given sentence under a weighted CFG,
using the CKY algorithm with Viterbi backpointers, unary closure and
optional beam pruning.
"""

# This code is hereby released to the public domain.

from __future__ import annotations
import argparse
import logging
import math
import re
import sys
import tqdm
from dataclasses import dataclass
from pathlib import Path
from collections import Counter
from typing import Callable, Counter as CounterType, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

log = logging.getLogger(Path(__file__).stem)

NO_PARSE = "NULL"   # printed for a sentence with no derivation from the start symbol


def beam_width(text: str) -> int:
    """Argument type for --beam: a non-negative integer."""
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError(f"beam width must be a non-negative integer, got {value}")
    return value


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "grammar", type=Path, help="Path to .gr file containing a weighted grammar"
    )
    parser.add_argument(
        "sentences", type=Path, nargs="+",
        help="Path(s) to .sen files containing one sentence per line"
    )
    parser.add_argument(
        "-s",
        "--start_symbol",
        type=str,
        help="Start symbol of the grammar (default is S)",
        default="S",
    )
    parser.add_argument(
        "-beam",
        "--beam",
        type=beam_width,
        help="Keep only the N best constituents per chart cell (default 0, no pruning)",
        default=0,
    )
    parser.add_argument(
        "-original",
        "--original",
        action="store_true",
        help="Print trees without the helper nonterminals introduced by binarization",
        default=False,
    )
    parser.add_argument(
        "--helper_prefix",
        type=str,
        help="Prefix of helper nonterminals hidden by -original (default is X, as in X1, X2, ...)",
        default="X",
    )
    parser.add_argument(
        "--probabilities",
        action="store_true",
        help="The first grammar column is a probability p; use log2(p) as the rule weight",
        default=False,
    )

    parser.add_argument(
        "--progress",
        action="store_true",
        help="Display a progress bar",
        default=False,
    )

    # for verbosity of logging
    parser.set_defaults(logging_level=logging.INFO)
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v", "--verbose", dest="logging_level", action="store_const", const=logging.DEBUG
    )
    verbosity.add_argument(
        "-q", "--quiet",   dest="logging_level", action="store_const", const=logging.WARNING
    )

    return parser.parse_args(argv)


class CkyChart:
    """A triangular chart for the CKY algorithm.

    Cell `(start, end)` holds the best derivation of each label over the words
    `tokens[start:end+1]`.  The chart is filled when it is constructed: first the
    diagonal from the lexical rules, then every wider span in order of increasing
    width, so that a cell is only read once all of its sub-spans are final.

    Beam pruning (`beam_width`) keeps only the best few labels of each cell.  It
    is an approximation: a label that scores badly over a short span may be
    exactly what the best full parse needed, so a pruned chart can return a worse
    parse or none at all.
    """

    def __init__(self, tokens: List[str], grammar: Grammar,
                 beam_width: Optional[int] = None, progress: bool = False) -> None:
        """Create the chart based on parsing `tokens` with `grammar`.
        A `beam_width` of None or 0 means no pruning.
        `progress` says whether to display progress bars as we parse."""
        self.tokens = tokens
        self.grammar = grammar
        self.beam_width = beam_width or None
        self.progress = progress
        self.profile: CounterType[str] = Counter()

        self._cells: List[List[Cell]]
        self._run_cky()    # run the CKY algorithm to fill self._cells

    def __len__(self) -> int:
        return len(self.tokens)

    def cell(self, start: int, end: int) -> Cell:
        """The cell for the span of words `start` through `end` (both inclusive)."""
        if not 0 <= start <= end < len(self.tokens):
            raise IndexError(f"span ({start}, {end}) is outside a chart over {len(self.tokens)} words")
        return self._cells[start][end - start]

    def best_parse(self) -> Optional[Candidate]:
        """The best derivation of the start symbol over the whole sentence, or None."""
        if not self.tokens:
            return None
        return self.cell(0, len(self.tokens) - 1).get(self.grammar.start_symbol)

    def _run_cky(self) -> None:
        """Fill in the CKY chart."""
        n = len(self.tokens)
        # Row `start` holds the cells (start, start), (start, start+1), ..., (start, n-1)
        self._cells = [[Cell(self.grammar, self.profile) for _ in range(n - start)]
                       for start in range(n)]

        for i, word in enumerate(self.tokens):
            self._fill_lexical(i, word)

        # Spans of width diag+1, shortest first.
        for diag in tqdm.tqdm(range(1, n),
                              total=max(n - 1, 0),
                              disable=not self.progress):
            for start in range(n - diag):
                self._fill_span(start, start + diag)

    def _fill_lexical(self, position: int, word: str) -> None:
        """Fill the diagonal cell for one word from the lexical rules."""
        cell = self.cell(position, position)
        for rule in self.grammar.lexical_rules_for(word):
            leaf = Candidate(word, 0.0)
            cell.add(Candidate(rule.lhs, leaf.score + rule.weight, leaf))
            self.profile["LEXICAL"] += 1
        if not cell:
            log.debug(f"No lexical rule covers word {position}: {word!r}")
        self._limit(cell, position, position)

    def _fill_span(self, start: int, end: int) -> None:
        """Fill the cell for a span wider than one word by combining every pair
        of adjacent sub-spans with every binary rule."""
        cell = self.cell(start, end)
        log.debug(f"Filling cell ({start}, {end})")
        for mid in range(start, end):
            left_cell = self.cell(start, mid)
            right_cell = self.cell(mid + 1, end)
            log.debug(f"\tchildren: ({start}, {mid}) - ({mid + 1}, {end})")
            if not left_cell or not right_cell:
                continue
            for rule in self.grammar.binary_rules:
                left_label, right_label = rule.rhs
                left = left_cell.get(left_label)
                right = right_cell.get(right_label)
                if left is None or right is None:
                    continue
                new_cand = Candidate(rule.lhs, left.score + right.score + rule.weight, left, right)
                self.profile["BINARY"] += 1
                if cell.add(new_cand):
                    log.debug(f"\t\t{rule} => {new_cand.score}")
        self._limit(cell, start, end)

    def _limit(self, cell: Cell, start: int, end: int) -> None:
        if self.beam_width is None:
            return
        pruned = cell.prune(self.beam_width)
        if pruned:
            log.debug(f"\tBeam kept {len(cell)} labels in ({start}, {end}), dropped {pruned}")
            self.profile["PRUNED"] += pruned


class Cell:
    """The constituents found over one span of the sentence: a map from each
    label to the single best derivation of that label seen so far.

    Adding a derivation replaces the stored one only if it scores strictly
    better, so among equally good derivations the first one added is kept.
    Every derivation that is stored is immediately extended by the unary rules
    of the grammar, transitively, until nothing new improves.

    >>> g = Grammar("S")
    >>> g.add_rules([Rule("A", ("b",), -1.0), Rule("B", ("A",), -0.5)])
    >>> c = Cell(g)
    >>> c.add(Candidate("A", -1.0, Candidate("b", 0.0)))
    True
    >>> c
    Cell({'A': -1.0, 'B': -1.5})
    >>> c.add(Candidate("A", -3.0, Candidate("b", 0.0)))   # worse, ignored
    False
    >>> c.prune(1)
    1
    >>> c
    Cell({'A': -1.0})
    """

    def __init__(self, grammar: Grammar, profile: Optional[CounterType[str]] = None) -> None:
        self._grammar = grammar
        self._best: Dict[str, Candidate] = {}
        self._profile: CounterType[str] = profile if profile is not None else Counter()

    def __len__(self) -> int:
        return len(self._best)

    def __contains__(self, label: str) -> bool:
        return label in self._best

    def __getitem__(self, label: str) -> Candidate:
        return self._best[label]

    def get(self, label: str) -> Optional[Candidate]:
        return self._best.get(label)

    def labels(self) -> Iterable[str]:
        return self._best.keys()

    def candidates(self) -> Iterable[Candidate]:
        return self._best.values()

    def add(self, candidate: Candidate) -> bool:
        """Store `candidate` if it is the first or a strictly better derivation of
        its label, then close the cell under the unary rules.
        Returns whether `candidate` was stored."""
        if not self._accepts(candidate):
            return False
        # Depth-first, in rule order: the same order as inserting each unary
        # extension recursively as soon as its child is stored.
        agenda = [candidate]
        while agenda:
            cand = agenda.pop()
            if not self._accepts(cand):
                continue
            self._best[cand.label] = cand
            rules = self._grammar.unary_rules(cand.label)
            for rule in reversed(rules):
                agenda.append(Candidate(rule.lhs, cand.score + rule.weight, cand))
            self._profile["UNARY"] += len(rules)
        return True

    def _accepts(self, cand: Candidate) -> bool:
        current = self._best.get(cand.label)
        if current is not None and not current.score < cand.score:
            return False
        if cand.repeats_label():
            # Only a unary cycle of positive total weight gets here; following
            # it would never stop improving.
            log.debug(f"\tUnary cycle through {cand.label} ignored at {cand.score}")
            self._profile["CYCLE"] += 1
            return False
        return True

    def prune(self, beam_width: int) -> int:
        """Keep only the `beam_width` best-scoring labels.  Among equal scores the
        earlier-stored label survives.  Returns the number of labels dropped."""
        if len(self._best) <= beam_width:
            return 0
        ranked = sorted(self._best.items(), key=lambda entry: entry[1].score, reverse=True)
        dropped = len(ranked) - beam_width
        self._best = dict(ranked[:beam_width])
        return dropped

    def __repr__(self) -> str:
        """Provide a human-readable string REPResentation of this Cell."""
        scores = {label: cand.score for label, cand in self._best.items()}
        return f"{self.__class__.__name__}({scores})"


class GrammarFormatError(ValueError):
    """A grammar file or rule that cannot be used by the parser."""


class Grammar:
    """Represents a weighted context-free grammar whose rules have one or two
    right-hand-side symbols, indexed for CKY.

    A symbol is a nonterminal if some rule has it on the left-hand side; any
    other symbol is a word.  Each rule is then lexical (`A -> word`), unary
    (`A -> B`) or binary (`A -> B C`).  Duplicate rules are kept; the parser
    simply prefers whichever gives the better score."""

    def __init__(self, start_symbol: str, *files: Path, probabilities: bool = False) -> None:
        """Create a grammar with the given start symbol,
        adding rules from the specified files if any.
        With `probabilities`, the files give rule probabilities rather than weights."""
        self.start_symbol = start_symbol
        self.probabilities = probabilities
        self._rules: List[Rule] = []
        self._nonterminals: Set[str] = set()
        self.lexical_rules: List[Rule] = []
        self.binary_rules: List[Rule] = []
        self._lexical_by_word: Dict[str, List[Rule]] = {}
        self._unary_by_rhs: Dict[str, List[Rule]] = {}   # rhs -> rules rewriting to it
        # Read the input grammar files
        for file in files:
            self.add_rules_from_file(file)

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return tuple(self._rules)

    def add_rules_from_file(self, file: Path) -> None:
        """Add rules to this grammar from a file (one rule per line).
        Each line has the form <weight>\\t<lhs>\\t<rhs>, where the weight is a
        log-probability or other score (higher is better) or, for a grammar
        read with `probabilities`, a probability p giving the weight log2(p)."""
        rules: List[Rule] = []
        try:
            with open(file, "r", encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    # remove any comment from end of line, and surrounding whitespace
                    line = line.split("#")[0].strip()
                    # skip empty lines
                    if line == "":
                        continue
                    rules.append(self._parse_rule(line, f"{file}:{lineno}"))
        except UnicodeDecodeError as e:
            raise GrammarFormatError(f"{file}: not valid UTF-8 ({e.reason})") from None
        self.add_rules(rules)
        log.debug(f"Read {len(rules)} rules from {file}")

    def _parse_rule(self, line: str, where: str) -> Rule:
        fields = line.split("\t")
        if len(fields) != 3:
            raise GrammarFormatError(f"{where}: expected <weight>\\t<lhs>\\t<rhs>, got {line!r}")
        _weight, lhs, _rhs = fields
        try:
            weight = float(_weight)
        except ValueError:
            raise GrammarFormatError(f"{where}: weight {_weight!r} is not a number") from None
        if self.probabilities:
            if not 0.0 < weight <= 1.0:
                raise GrammarFormatError(f"{where}: probability must be in (0, 1], got {weight}")
            weight = math.log2(weight)
        lhs = lhs.strip()
        rhs = tuple(_rhs.split())
        if not lhs or len(rhs) not in (1, 2):
            raise GrammarFormatError(f"{where}: a rule needs a left-hand side and one or two "
                                     f"right-hand-side symbols, got {line!r}")
        return Rule(lhs=lhs, rhs=rhs, weight=weight)

    def add_rules(self, rules: Iterable[Rule]) -> None:
        """Add rules to this grammar and rebuild its index.
        If any rule is malformed, none of them is added."""
        rules = list(rules)
        for rule in rules:
            if len(rule.rhs) not in (1, 2):
                raise GrammarFormatError(f"Rule {rule} must have one or two right-hand-side symbols")
        self._rules.extend(rules)
        self._build_index()

    def _build_index(self) -> None:
        # Whether a rhs symbol is a word depends on every rule, so the whole
        # index is rebuilt whenever rules are added.
        self._nonterminals = {rule.lhs for rule in self._rules}
        self.lexical_rules = []
        self.binary_rules = []
        self._lexical_by_word = {}
        self._unary_by_rhs = {}
        for rule in self._rules:
            kind = self.classify(rule)
            if kind == "lexical":
                self.lexical_rules.append(rule)
                self._lexical_by_word.setdefault(rule.rhs[0], []).append(rule)
            elif kind == "unary":
                self._unary_by_rhs.setdefault(rule.rhs[0], []).append(rule)
            else:
                self.binary_rules.append(rule)
        log.debug(f"Indexed {len(self.lexical_rules)} lexical, "
                  f"{sum(len(rs) for rs in self._unary_by_rhs.values())} unary and "
                  f"{len(self.binary_rules)} binary rules")

    def classify(self, rule: Rule) -> str:
        """'lexical', 'unary' or 'binary'."""
        if len(rule.rhs) == 2:
            return "binary"
        return "unary" if self.is_nonterminal(rule.rhs[0]) else "lexical"

    def is_nonterminal(self, symbol: str) -> bool:
        """Is symbol a nonterminal symbol?"""
        return symbol in self._nonterminals

    def lexical_rules_for(self, word: str) -> List[Rule]:
        """The lexical rules that rewrite to exactly this word, in the order read."""
        return self._lexical_by_word.get(word, [])

    def unary_rules(self, rhs: str) -> List[Rule]:
        """The unary rules whose single right-hand-side symbol is `rhs`."""
        return self._unary_by_rhs.get(rhs, [])


# Using a dataclass here lets us declare that instances are "frozen" (immutable),
# and therefore safe to share between the cells and charts of different sentences.
@dataclass(frozen=True)
class Rule:
    """
    A grammar rule has a left-hand side (lhs), a right-hand side (rhs), and a weight.

    >>> r = Rule('S',('NP','VP'),-0.5)
    >>> r
    S → NP VP (-0.5)
    >>> r.weight = 2.718
    Traceback (most recent call last):
    dataclasses.FrozenInstanceError: cannot assign to field 'weight'
    """
    lhs: str
    rhs: Tuple[str, ...]
    weight: float = 0.0

    def __repr__(self) -> str:
        """Complete string used to show this rule instance at the command line"""
        return f"{self.lhs} → {' '.join(self.rhs)} ({self.weight})"


@dataclass(frozen=True)
class Candidate:
    """One scored derivation of `label` over some span of the sentence.

    With no children it is a word of the sentence (score 0.0); with only a
    `left` child it applies a unary or lexical rule; with both children it
    applies a binary rule.  The score is the sum of the weights of every rule
    in the derivation.

    A candidate keeps the children it was built from, even if a better
    derivation of one of those children turns up later in the same cell.

    >>> np = Candidate("NP", -1.0, Candidate("n", 0.0))
    >>> vp = Candidate("VP", -1.0, Candidate("v", 0.0))
    >>> s = Candidate("S", -2.0, np, vp)
    >>> print(s)
    (S (NP n) (VP v)) -2.0
    >>> Candidate("S", -2.0, Candidate("X1", -2.0, np, vp)).render(lambda label: label == "X1")
    '(S (NP n) (VP v))'
    """
    label: str
    score: float
    left: Optional[Candidate] = None
    right: Optional[Candidate] = None

    @property
    def is_leaf(self) -> bool:
        return self.left is None

    @property
    def is_unary(self) -> bool:
        return self.left is not None and self.right is None

    def repeats_label(self) -> bool:
        """Does this derivation reach its own label again through an unbroken
        chain of unary (or lexical) steps?"""
        node = self.left if self.right is None else None
        while node is not None and node.is_unary:
            if node.label == self.label:
                return True
            node = node.left
        return False

    def render(self, hide: Optional[Callable[[str], bool]] = None) -> str:
        """The derivation as a bracketed tree.  Nodes whose label satisfies
        `hide` are left out, with their children taking their place."""
        return " ".join(self._parts(hide))

    def _parts(self, hide: Optional[Callable[[str], bool]]) -> List[str]:
        # Explicit stack, so that long sentences don't hit the recursion limit.
        # A node is visited twice: first to schedule its children, then (marked
        # done) to collect their parts from `results`.
        results: List[List[str]] = []
        stack: List[Tuple[Candidate, bool]] = [(self, False)]
        while stack:
            node, done = stack.pop()
            if node.left is None:
                results.append([node.label])
            elif not done:
                stack.append((node, True))
                if node.right is not None:
                    stack.append((node.right, False))
                stack.append((node.left, False))
            else:
                children = results.pop()
                if node.right is not None:
                    children = results.pop() + children
                if hide is not None and hide(node.label):
                    results.append(children)
                else:
                    results.append([f"({node.label} {' '.join(children)})"])
        return results[0]

    def __str__(self) -> str:
        return f"{self.render()} {self.score}"


def helper_matcher(prefix: str) -> Callable[[str], bool]:
    """Recognize the helper nonterminals made by binarizing a grammar:
    `prefix` followed by a number.

    >>> is_helper = helper_matcher("X")
    >>> is_helper("X12"), is_helper("X"), is_helper("XP")
    (True, False, False)
    """
    pattern = re.compile(re.escape(prefix) + r"\d+")
    return lambda symbol: pattern.fullmatch(symbol) is not None


def parse_sentence(tokens: List[str], grammar: Grammar,
                   beam_width: Optional[int] = None, progress: bool = False) -> Optional[Candidate]:
    """The best parse of `tokens` from the grammar's start symbol, or None."""
    chart = CkyChart(tokens, grammar, beam_width=beam_width, progress=progress)
    log.debug(f"Profile of work done: {chart.profile}")
    return chart.best_parse()


def format_parse(candidate: Optional[Candidate], original: bool = False,
                 helper_prefix: str = "X") -> str:
    """The output line for one sentence: the tree and its score, or NO_PARSE."""
    if candidate is None:
        return NO_PARSE
    hide = helper_matcher(helper_prefix) if original else None
    return f"{candidate.render(hide)} {candidate.score}"


def parse_file(file: Path, grammar: Grammar, beam_width: Optional[int] = None,
               original: bool = False, helper_prefix: str = "X",
               progress: bool = False) -> Iterator[str]:
    """Parse each line of `file` as a whitespace-separated sentence, yielding
    one output line per input line.  A blank line has no parse."""
    with open(file, encoding="utf-8") as f:
        for sentence in f:
            sentence = sentence.strip()
            log.debug("=" * 70)
            log.debug(f"Parsing sentence: {sentence}")
            best = parse_sentence(sentence.split(), grammar,
                                  beam_width=beam_width, progress=progress)
            yield format_parse(best, original=original, helper_prefix=helper_prefix)


def main(argv: Optional[Sequence[str]] = None) -> None:
    # Parse the command-line arguments
    args = parse_args(argv)
    logging.basicConfig(level=args.logging_level)

    try:
        grammar = Grammar(args.start_symbol, args.grammar, probabilities=args.probabilities)
    except (OSError, GrammarFormatError) as e:
        log.error(f"Could not load grammar: {e}")
        sys.exit(1)

    failed = False
    for sentences in args.sentences:
        try:
            for line in parse_file(sentences, grammar, beam_width=args.beam,
                                   original=args.original, helper_prefix=args.helper_prefix,
                                   progress=args.progress):
                print(line)
        except (OSError, UnicodeDecodeError) as e:
            log.error(f"Could not read sentences from {sentences}: {e}")
            failed = True
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
