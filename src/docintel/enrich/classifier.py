"""Table detection: a cheap pre-filter in front of a label classifier."""
from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Mapping, Optional, Protocol

from docintel.config import RetrySettings
from docintel.errors import ClassificationError
from docintel.resilience import call_with_retry

from .generation import ModelNotReadyError, TextGenerator

LOGGER = logging.getLogger(__name__)

TABLE_LABEL = "TABLE"
TEXT_LABEL = "TEXT"
TABLE_LABELS: Dict[str, str] = {
    TABLE_LABEL: "Has pipe characters | separating columns and rows of aligned data representing a data table",
    TEXT_LABEL: "Plain paragraphs without | delimiters or columnar structure",
}
TABLE_TASK_HINT = (
    "Find markdown tables with | separators, --- dividers, or financial data in columns "
    "with values like $ or %"
)
TABLE_PREDICATE = (
    "Is there pipe characters | separating columns and rows of aligned data representing a data table?"
)

_DIVIDER_CELL_RE = re.compile(r"^:?-{3,}:?$")
_COLUMN_GAP_RE = re.compile(r"\t+| {2,}")
_FINANCIAL_RE = re.compile(r"[$%]|\d")
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class Classifier(Protocol):
    def classify(self, text: str, labels: Mapping[str, str], task_hint: str) -> str:
        ...


class Prefilter(Protocol):
    def admits(self, text: str, predicate: str) -> bool:
        ...


def split_pipe_row(line: str) -> Optional[List[str]]:
    """Return the cells of a pipe-delimited row, or ``None`` for other lines."""

    stripped = line.strip()
    if "|" not in stripped:
        return None
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|"):
        stripped = stripped[:-1]
    cells = [cell.strip() for cell in stripped.split("|")]
    return cells if len(cells) >= 2 else None


def is_divider_row(cells: List[str]) -> bool:
    non_empty = [cell for cell in cells if cell]
    return bool(non_empty) and all(_DIVIDER_CELL_RE.match(cell) for cell in non_empty)


def _columnar_cells(line: str) -> Optional[List[str]]:
    cells = [cell for cell in _COLUMN_GAP_RE.split(line.strip()) if cell]
    if len(cells) < 2 or not any(_FINANCIAL_RE.search(cell) for cell in cells):
        return None
    return cells


def looks_tabular(text: str) -> bool:
    """Detect pipe tables, divider rows, or aligned columns of figures.

    Two consecutive rows with the same number of cells are required, so a
    single stray ``|`` in prose does not count as a table.
    """

    previous_pipe: Optional[int] = None
    previous_columns: Optional[int] = None
    for line in text.splitlines():
        pipe_cells = split_pipe_row(line)
        if pipe_cells is not None:
            if previous_pipe is not None and (previous_pipe == len(pipe_cells) or is_divider_row(pipe_cells)):
                return True
            previous_pipe = len(pipe_cells)
        else:
            previous_pipe = None

        columns = _columnar_cells(line) if pipe_cells is None else None
        if columns is not None:
            if previous_columns == len(columns):
                return True
            previous_columns = len(columns)
        else:
            previous_columns = None
    return False


class HeuristicTableClassifier:
    """Local rule-based classifier; also usable as its own pre-filter.

    ``admits`` applies the same rule as ``classify`` so the fast path never
    disagrees with the full classification.
    """

    def __init__(self, positive_label: str = TABLE_LABEL, negative_label: str = TEXT_LABEL) -> None:
        self.positive_label = positive_label
        self.negative_label = negative_label

    def classify(self, text: str, labels: Mapping[str, str], task_hint: str) -> str:
        del task_hint
        missing = {self.positive_label, self.negative_label} - set(labels)
        if missing:
            raise ClassificationError(f"Label set is missing {sorted(missing)}")
        return self.positive_label if looks_tabular(text) else self.negative_label

    def admits(self, text: str, predicate: str) -> bool:
        del predicate
        return looks_tabular(text)


def _parse_label(reply: str, labels: Mapping[str, str]) -> str:
    by_upper = {label.upper(): label for label in labels}
    match = _JSON_OBJECT_RE.search(reply)
    if match:
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            chosen = payload.get("labels")
            if isinstance(chosen, list) and chosen and str(chosen[0]).upper() in by_upper:
                return by_upper[str(chosen[0]).upper()]
            raise ClassificationError(f"Classifier answered with unknown labels: {chosen!r}")

    candidate = reply.strip().strip("\"'`.").upper()
    if candidate in by_upper:
        return by_upper[candidate]
    raise ClassificationError(f"Could not interpret classifier reply: {reply[:80]!r}")


class GenerativeClassifier:
    """Classifier that asks a text-generation model to pick one label."""

    def __init__(self, generator: TextGenerator, *, max_tokens: int = 32) -> None:
        self.generator = generator
        self.max_tokens = max_tokens

    def build_prompt(self, text: str, labels: Mapping[str, str], task_hint: str) -> str:
        label_lines = "\n".join(f"- {label}: {description}" for label, description in labels.items())
        return (
            "Classify the text into exactly one of the labels below.\n"
            f"Task: {task_hint}\n"
            f"Labels:\n{label_lines}\n"
            'Answer with JSON like {"labels": ["LABEL"]}.\n\n'
            f"Text:\n{text}"
        )

    def classify(self, text: str, labels: Mapping[str, str], task_hint: str) -> str:
        if not labels:
            raise ClassificationError("Label set must not be empty")
        try:
            reply = self.generator.generate(self.build_prompt(text, labels, task_hint), max_tokens=self.max_tokens)
        except ModelNotReadyError as error:
            raise ClassificationError("Classification model is unavailable", cause=error) from error
        return _parse_label(reply, labels)


class GenerativePrefilter:
    """Yes/no pre-filter backed by a text-generation model."""

    _YES = {"yes", "true", "y"}
    _NO = {"no", "false", "n"}

    def __init__(self, generator: TextGenerator) -> None:
        self.generator = generator

    def admits(self, text: str, predicate: str) -> bool:
        prompt = f"{predicate}: {text}\nAnswer yes or no."
        try:
            reply = self.generator.generate(prompt, max_tokens=4)
        except ModelNotReadyError as error:
            raise ClassificationError("Pre-filter model is unavailable", cause=error) from error
        words = reply.strip().lower().split()
        answer = words[0].strip(".,!\"'") if words else ""
        if answer in self._YES:
            return True
        if answer in self._NO:
            return False
        raise ClassificationError(f"Could not interpret pre-filter reply: {reply[:80]!r}")


class TableDetector:
    """Decide whether a chunk carries a data table.

    The pre-filter, when configured, runs first; a rejected chunk is reported
    as text without calling the classifier. Both calls go through the retry
    policy.
    """

    def __init__(
        self,
        classifier: Classifier,
        prefilter: Optional[Prefilter] = None,
        *,
        labels: Optional[Mapping[str, str]] = None,
        task_hint: str = TABLE_TASK_HINT,
        positive_label: str = TABLE_LABEL,
        predicate: str = TABLE_PREDICATE,
        retry: Optional[RetrySettings] = None,
    ) -> None:
        self.classifier = classifier
        self.prefilter = prefilter
        self.labels = dict(labels or TABLE_LABELS)
        self.task_hint = task_hint
        self.positive_label = positive_label
        self.predicate = predicate
        self.retry = retry or RetrySettings()
        if positive_label not in self.labels:
            raise ValueError(f"positive label {positive_label!r} is not part of the label set")

    def is_table(self, text: str) -> bool:
        if not text or not text.strip():
            return False
        if self.prefilter is not None:
            admitted = call_with_retry(
                lambda: self.prefilter.admits(text, self.predicate),
                service="prefilter",
                settings=self.retry,
            )
            if not admitted:
                return False
        label = call_with_retry(
            lambda: self.classifier.classify(text, self.labels, self.task_hint),
            service="classifier",
            settings=self.retry,
        )
        return label == self.positive_label


__all__ = [
    "GenerativeClassifier",
    "GenerativePrefilter",
    "HeuristicTableClassifier",
    "TABLE_LABELS",
    "TABLE_PREDICATE",
    "TABLE_TASK_HINT",
    "TableDetector",
    "is_divider_row",
    "looks_tabular",
    "split_pipe_row",
]
