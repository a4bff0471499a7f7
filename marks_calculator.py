#!/usr/bin/env python3
"""
Response-sheet marks calculator using the candidate's exported
"review answers" HTML page from the exam portal.

Key features:
- Finds each question block and reads the chosen option against the
  option flagged as correct on the page
- Groups answers into the sections labelled on the page
- Applies a configurable positive/negative marking scheme per section and overall
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import re
import sys
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

UNMARKED = "--"
IMPLICIT_SECTION = "Overall"

OPTION_LETTERS: Dict[int, str] = {1: "A", 2: "B", 3: "C", 4: "D"}

QUESTION_TABLE_SELECTOR = "table.norm-tbl, table.questionRowTbl"
ANSWER_ROW_SCAN_LIMIT = 8
OPTION_ROW_COUNT = 4
MENU_SEARCH_DEPTH = 4

QUESTION_LABEL_RE = re.compile(r"^Q\.\d+$")
OPTION_NUMBER_RE = re.compile(r"^(\d+)\.")
NOT_ATTEMPTED_RE = re.compile(r"NOT\s*ATTEMPTED", re.I)
FALLBACK_PAIR_RE = re.compile(
    r"Your\s*Answer\s*[:\-]?\s*([A-D]\b|--|Not Attempted\b).*?"
    r"Correct\s*Answer\s*[:\-]?\s*([A-D])",
    re.I,
)

CORRECT = "correct"
WRONG = "wrong"
UNATTEMPTED = "unattempted"


@dataclass(frozen=True)
class AnswerPair:
    chosen: str
    correct_answer: str

    def to_dict(self) -> Dict[str, str]:
        return {"chosen": self.chosen, "correctAnswer": self.correct_answer}


@dataclass(frozen=True)
class Section:
    name: str
    pairs: Tuple[AnswerPair, ...] = ()


@dataclass(frozen=True)
class ParseResult:
    sections: Tuple[Section, ...] = ()

    def all_pairs(self) -> List[AnswerPair]:
        return [pair for section in self.sections for pair in section.pairs]


@dataclass(frozen=True)
class SectionMarker:
    """A section label found on the page and its position in document order."""

    name: str
    position: int


@dataclass(frozen=True)
class QuestionBlock:
    """One extracted answer pair and the document position of its question table."""

    pair: AnswerPair
    position: int


@dataclass(frozen=True)
class ScoreSummary:
    correct: int
    wrong: int
    unattempted: int
    total_questions: int
    marks_per_correct: float
    negative_per_wrong: float
    total_marks: float
    accuracy: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "correct": self.correct,
            "wrong": self.wrong,
            "unattempted": self.unattempted,
            "totalQuestions": self.total_questions,
            "marksPerCorrect": self.marks_per_correct,
            "negativePerWrong": self.negative_per_wrong,
            "totalMarks": self.total_marks,
            "accuracy": self.accuracy,
        }


@dataclass(frozen=True)
class SectionScores:
    sections: List[Tuple[str, ScoreSummary]] = field(default_factory=list)
    total: Optional[ScoreSummary] = None


def round_half_up(value: float, places: int = 2) -> float:
    if not math.isfinite(value):
        return value
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def map_to_letter(value: object) -> str:
    """Map an option number 1-4 to A-D. Anything else becomes UNMARKED."""
    if isinstance(value, bool):
        return UNMARKED
    if isinstance(value, int):
        return OPTION_LETTERS.get(value, UNMARKED)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return OPTION_LETTERS.get(int(text), UNMARKED)
    return UNMARKED


def distribute_evenly(markers: Sequence[SectionMarker], blocks: Sequence[QuestionBlock]) -> List[Section]:
    """Split pairs across sections by count, in document order.

    Section membership is not recoverable from the markup nesting, so each
    section gets floor(n / k) pairs and the last one takes the remainder.
    """
    pairs = [b.pair for b in blocks]
    if not markers:
        return [Section(IMPLICIT_SECTION, tuple(pairs))]
    if len(markers) == 1:
        return [Section(markers[0].name, tuple(pairs))]

    per_section = len(pairs) // len(markers)
    sections: List[Section] = []
    idx = 0
    for i, marker in enumerate(markers):
        end = len(pairs) if i == len(markers) - 1 else idx + per_section
        sections.append(Section(marker.name, tuple(pairs[idx:end])))
        idx = end
    return sections


def distribute_by_position(markers: Sequence[SectionMarker], blocks: Sequence[QuestionBlock]) -> List[Section]:
    """Give each pair to the nearest section label above its question table.

    Pairs appearing before the first label go to the first section.
    """
    if not markers:
        return [Section(IMPLICIT_SECTION, tuple(b.pair for b in blocks))]

    buckets: List[List[AnswerPair]] = [[] for _ in markers]
    for block in blocks:
        owner = 0
        for i, marker in enumerate(markers):
            if marker.position < block.position:
                owner = i
            else:
                break
        buckets[owner].append(block.pair)
    return [Section(m.name, tuple(bucket)) for m, bucket in zip(markers, buckets)]


SectionAssigner = Callable[[Sequence[SectionMarker], Sequence[QuestionBlock]], List[Section]]

SECTION_STRATEGIES: Dict[str, SectionAssigner] = {
    "even": distribute_evenly,
    "position": distribute_by_position,
}


def _cells(row: Tag) -> List[Tag]:
    return row.find_all("td", recursive=False) or row.find_all("td")


def _has_class(tag: Tag, name: str) -> bool:
    return name in (tag.get("class") or [])


def _find_section_markers(soup: BeautifulSoup, positions: Dict[int, int]) -> List[SectionMarker]:
    markers: List[SectionMarker] = []
    for lbl in soup.select("div.section-lbl"):
        spans = lbl.find_all("span")
        if len(spans) < 2:
            continue
        prefix = spans[0].get_text(strip=True)
        name = spans[1].get_text(strip=True)
        if "Section" in prefix and name:
            markers.append(SectionMarker(name=name, position=positions.get(id(lbl), 0)))
            logger.debug("New section detected: %s", name)
    return markers


def _find_answer_row(q_row: Tag) -> Optional[Tag]:
    following = q_row.find_next_sibling("tr")
    if following is not None and "Ans" in following.get_text():
        return following

    for row in q_row.find_next_siblings("tr", limit=ANSWER_ROW_SCAN_LIMIT):
        if not row.find("td", class_="bold"):
            continue
        if "Ans" in row.get_text():
            return row
    return None


def _correct_option_number(answer_row: Tag) -> Optional[str]:
    option_rows = [answer_row] + list(answer_row.find_next_siblings("tr", limit=OPTION_ROW_COUNT - 1))
    for row in option_rows:
        cells = _cells(row)
        if len(cells) < 2:
            continue
        cell = cells[1]
        ticked = any("tick.png" in (img.get("src") or "") for img in cell.find_all("img"))
        if not (_has_class(cell, "rightAns") or ticked):
            continue
        m = OPTION_NUMBER_RE.match(cell.get_text(strip=True))
        if m:
            return m.group(1)
    return None


def _is_menu_table(tag: object) -> bool:
    return isinstance(tag, Tag) and tag.name == "table" and _has_class(tag, "menu-tbl")


def _holds_other_question(tag: Tag, q_cell: Tag) -> bool:
    return any(
        td is not q_cell and QUESTION_LABEL_RE.match(td.get_text(strip=True)) for td in tag.find_all("td")
    )


def _find_menu_table(table: Tag, q_cell: Tag) -> Optional[Tag]:
    following = table.find_next_sibling()
    if _is_menu_table(following):
        return following

    # The chosen-option table often sits in a neighbouring cell or row of the
    # question panel. Climb only while the container holds this question alone.
    node = table
    for _ in range(MENU_SEARCH_DEPTH):
        parent = node.parent
        if not isinstance(parent, Tag) or _holds_other_question(parent, q_cell):
            break
        menu = parent.find("table", class_="menu-tbl")
        if menu is not None:
            return menu
        if _has_class(parent, "question-pnl"):
            break
        node = parent
    return None


def _chosen_option(table: Tag, q_cell: Tag) -> str:
    menu = _find_menu_table(table, q_cell)
    if menu is None:
        return UNMARKED
    rows = menu.find_all("tr")
    if not rows:
        return UNMARKED
    cells = _cells(rows[-1])
    if len(cells) >= 2 and "Chosen Option" in cells[0].get_text():
        return map_to_letter(cells[1].get_text(strip=True))
    return UNMARKED


def _extract_blocks(soup: BeautifulSoup, positions: Dict[int, int]) -> List[QuestionBlock]:
    blocks: List[QuestionBlock] = []
    seen: set = set()

    for table in soup.select(QUESTION_TABLE_SELECTOR):
        q_cell = next(
            (td for td in table.find_all("td") if QUESTION_LABEL_RE.match(td.get_text(strip=True))),
            None,
        )
        if q_cell is None or id(q_cell) in seen:
            continue
        seen.add(id(q_cell))

        q_row = q_cell.find_parent("tr")
        if q_row is None:
            continue

        answer_row = _find_answer_row(q_row)
        if answer_row is None:
            logger.debug("Skipping %s: no answer row", q_cell.get_text(strip=True))
            continue

        correct = map_to_letter(_correct_option_number(answer_row))
        if correct == UNMARKED:
            logger.debug("Skipping %s: no correct option flagged", q_cell.get_text(strip=True))
            continue

        own_table = q_row.find_parent("table") or table
        pair = AnswerPair(chosen=_chosen_option(own_table, q_cell), correct_answer=correct)
        blocks.append(QuestionBlock(pair=pair, position=positions.get(id(table), 0)))

    return blocks


def _fallback_pairs(soup: BeautifulSoup) -> List[AnswerPair]:
    body = soup.body or soup
    text = re.sub(r"\s+", " ", body.get_text(" "))
    pairs: List[AnswerPair] = []
    for m in FALLBACK_PAIR_RE.finditer(text):
        chosen = m.group(1).strip().upper()
        if NOT_ATTEMPTED_RE.search(chosen):
            chosen = UNMARKED
        pairs.append(AnswerPair(chosen=chosen, correct_answer=m.group(2).upper()))
    return pairs


def parse_answers(html: object, assign_sections: SectionAssigner = distribute_evenly) -> ParseResult:
    """Extract answer pairs from a response-sheet page, grouped into sections.

    Falls back to a text scan for "Your Answer: X ... Correct Answer: Y" only
    when no structured question block produced a pair. Without section labels
    the pairs land in a single implicit "Overall" section, returned only when
    it holds pairs.
    """
    if not html or not isinstance(html, str):
        logger.warning("No valid HTML provided for parsing")
        return ParseResult()

    soup = BeautifulSoup(html, "html.parser")
    positions = {id(tag): idx for idx, tag in enumerate(soup.find_all(True))}

    markers = _find_section_markers(soup, positions)
    blocks = _extract_blocks(soup, positions)
    sections = assign_sections(markers, blocks)

    if not blocks and sections:
        extra = _fallback_pairs(soup)
        if extra:
            logger.info("Structured pass found no questions; text fallback found %d pairs", len(extra))
            last = sections[-1]
            sections[-1] = Section(last.name, last.pairs + tuple(extra))

    if not markers and not any(s.pairs for s in sections):
        sections = []

    logger.info(
        "Detected %d sections: %s",
        len(sections),
        ", ".join(f"{s.name}: {len(s.pairs)} pairs" for s in sections),
    )
    return ParseResult(sections=tuple(sections))


def classify(pair: AnswerPair) -> str:
    chosen = str(pair.chosen or "").strip().upper()
    correct = str(pair.correct_answer or "").strip().upper()
    if not chosen or chosen == UNMARKED or NOT_ATTEMPTED_RE.search(chosen):
        return UNATTEMPTED
    if chosen == correct:
        return CORRECT
    return WRONG


def compute_score(
    pairs: Sequence[AnswerPair] = (),
    marks_per_correct: float = 1,
    negative_per_wrong: float = 0.25,
) -> ScoreSummary:
    counts = {CORRECT: 0, WRONG: 0, UNATTEMPTED: 0}
    for pair in pairs:
        counts[classify(pair)] += 1

    correct, wrong, unattempted = counts[CORRECT], counts[WRONG], counts[UNATTEMPTED]
    total_marks = correct * marks_per_correct - wrong * negative_per_wrong
    total_questions = (correct + wrong + unattempted) or len(pairs)
    accuracy = 0.0 if total_questions == 0 else correct / max(1, correct + wrong) * 100

    return ScoreSummary(
        correct=correct,
        wrong=wrong,
        unattempted=unattempted,
        total_questions=total_questions,
        marks_per_correct=marks_per_correct,
        negative_per_wrong=negative_per_wrong,
        total_marks=round_half_up(total_marks),
        accuracy=round_half_up(accuracy),
    )


def compute_section_scores(
    sections: Sequence[Section],
    marks_per_correct: float = 1,
    negative_per_wrong: float = 0.25,
) -> SectionScores:
    """Score each section, then score the flattened pairs for the overall total.

    The total is recomputed from every pair rather than summed from the
    sections, so it does not depend on how pairs were split between them.
    """
    per_section = [
        (sec.name, compute_score(sec.pairs, marks_per_correct, negative_per_wrong)) for sec in sections
    ]
    all_pairs = [pair for sec in sections for pair in sec.pairs]
    total = compute_score(all_pairs, marks_per_correct, negative_per_wrong)
    return SectionScores(sections=per_section, total=total)


def build_result(parse_result: ParseResult, scores: SectionScores) -> Dict[str, object]:
    return {
        "sections": [{"name": name, **summary.to_dict()} for name, summary in scores.sections],
        "total": scores.total.to_dict() if scores.total else compute_score([]).to_dict(),
        "pairs": [pair.to_dict() for pair in parse_result.all_pairs()],
    }


def evaluate_html(
    html: str,
    marks_per_correct: float = 1,
    negative_per_wrong: float = 0.25,
    section_strategy: str = "even",
) -> Tuple[ParseResult, SectionScores]:
    if section_strategy not in SECTION_STRATEGIES:
        raise ValueError(f"Unknown section strategy {section_strategy!r}; use one of {sorted(SECTION_STRATEGIES)}")
    parsed = parse_answers(html, SECTION_STRATEGIES[section_strategy])
    return parsed, compute_section_scores(parsed.sections, marks_per_correct, negative_per_wrong)


def print_report(scores: SectionScores) -> None:
    total = scores.total or compute_score([])
    print("=" * 90)
    print("RESPONSE SHEET MARKS CALCULATION")
    print(f"Marking: +{total.marks_per_correct:g} per correct, -{total.negative_per_wrong:g} per wrong")
    print("=" * 90)
    print(f"{'Section':<30} {'Correct':>8} {'Wrong':>8} {'Unatt.':>8} {'Marks':>10} {'Accuracy':>10}")
    print("-" * 90)

    for name, sc in scores.sections:
        print(
            f"{name[:30]:<30} {sc.correct:>8} {sc.wrong:>8} {sc.unattempted:>8} "
            f"{sc.total_marks:>+10.2f} {sc.accuracy:>9.2f}%"
        )

    print()
    print("=" * 90)
    print("SUMMARY")
    print("=" * 90)
    print(f"Questions:   {total.total_questions}")
    print(f"Correct:     {total.correct}")
    print(f"Wrong:       {total.wrong}")
    print(f"Unattempted: {total.unattempted}")
    print(f"TOTAL:       {total.total_marks:+.2f}")
    print(f"Accuracy:    {total.accuracy:.2f}%")


def main() -> None:
    parser = argparse.ArgumentParser(description="Calculate marks from an exported exam response-sheet HTML page")
    parser.add_argument("--response-html", required=True, help="Path to candidate response HTML file")
    parser.add_argument("--marks-per-correct", type=float, default=1.0, help="Marks awarded per correct answer")
    parser.add_argument("--negative-per-wrong", type=float, default=0.25, help="Marks deducted per wrong answer")
    parser.add_argument(
        "--section-strategy",
        choices=sorted(SECTION_STRATEGIES),
        default="even",
        help="How answers are split between section labels",
    )
    parser.add_argument("--json", action="store_true", help="Print the structured result as JSON")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    try:
        with open(args.response_html, "r", encoding="utf-8", errors="ignore") as f:
            html = f.read()
        parsed, scores = evaluate_html(html, args.marks_per_correct, args.negative_per_wrong, args.section_strategy)
        if not parsed.all_pairs():
            raise ValueError("No answer pairs detected. Try the full HTML source of the response page.")
        if args.json:
            print(json.dumps(build_result(parsed, scores), indent=2))
        else:
            print_report(scores)
    except Exception as exc:
        print(f"ERROR: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
