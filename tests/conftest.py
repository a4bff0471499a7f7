"""Shared response-sheet HTML builders."""

from __future__ import annotations

import importlib.util
from pathlib import Path
from types import ModuleType
from typing import Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def load_api_index() -> ModuleType:
    """Load the serverless entrypoint api/index.py by path."""
    module_spec = importlib.util.spec_from_file_location("api_index", PROJECT_ROOT / "api" / "index.py")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


def section_label(name: str) -> str:
    return f'<div class="section-lbl"><span class="section-label">Section : </span><span class="bold">{name}</span></div>'


def question_table(qnum: int, correct: int, *, tick_image: bool = False, filler_row: bool = False) -> str:
    option_rows = []
    for opt in range(1, 5):
        label = "Ans" if opt == 1 else ""
        if opt == correct and tick_image:
            cell = f'<td><img src="/per/g01/pub/tick.png" />{opt}. Option {opt}</td>'
        elif opt == correct:
            cell = f'<td class="rightAns">{opt}. Option {opt}</td>'
        else:
            cell = f'<td class="wrngAns">{opt}. Option {opt}</td>'
        option_rows.append(f'<tr><td class="bold">{label}</td>{cell}</tr>')

    filler = '<tr><td class="bold"></td><td>See the figure below</td></tr>' if filler_row else ""
    return (
        '<table class="questionRowTbl"><tbody>'
        f'<tr><td class="bold">Q.{qnum}</td><td class="bold">Which option is right for question {qnum}?</td></tr>'
        f"{filler}{''.join(option_rows)}"
        "</tbody></table>"
    )


def menu_table(qnum: int, chosen: Optional[str]) -> str:
    """chosen=None leaves the Chosen Option row out."""
    rows = [
        "<tr><td>Question Type :</td><td>MCQ</td></tr>",
        f"<tr><td>Question ID :</td><td>6406{qnum:04d}</td></tr>",
        "<tr><td>Status :</td><td>Answered</td></tr>",
    ]
    if chosen is not None:
        rows.append(f"<tr><td>Chosen Option :</td><td>{chosen}</td></tr>")
    return f'<table class="menu-tbl"><tbody>{"".join(rows)}</tbody></table>'


def question_block(
    qnum: int,
    correct: int,
    chosen: Optional[str] = None,
    *,
    tick_image: bool = False,
    with_menu: bool = True,
    filler_row: bool = False,
) -> str:
    """One question panel in the portal's review-answers layout."""
    question = question_table(qnum, correct, tick_image=tick_image, filler_row=filler_row)
    menu = f"<td>{menu_table(qnum, chosen)}</td>" if with_menu else ""
    return (
        '<div class="question-pnl"><table class="questionPnlTbl"><tbody><tr>'
        f"<td>{question}</td>{menu}"
        "</tr></tbody></table></div>"
    )


def bare_question(qnum: int, correct: int, chosen: Optional[str] = None, *, with_menu: bool = True) -> str:
    """Question and menu tables side by side in an unclassed div."""
    menu = menu_table(qnum, chosen) if with_menu else ""
    return f"<div>{question_table(qnum, correct)}{menu}</div>"


def page(*parts: str) -> str:
    return f"<html><head><title>Response Sheet</title></head><body>{''.join(parts)}</body></html>"


@pytest.fixture
def two_section_page() -> str:
    """Two sections, five questions: 3 correct, 1 wrong, 1 not answered."""
    return page(
        section_label("Current Affairs"),
        question_block(1, correct=2, chosen="2"),
        question_block(2, correct=1, chosen="3"),
        section_label("Reasoning"),
        question_block(3, correct=4, chosen="4", tick_image=True),
        question_block(4, correct=3, chosen="--"),
        question_block(5, correct=1, chosen="1", filler_row=True),
    )
