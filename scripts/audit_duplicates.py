"""Report likely duplicate questions already stored in the question table."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Sequence

import db
from db_pool import SQLiteConnectionPool
from engines.config import DedupThresholds
from engines.dedup import AuditFinding, DedupEngine


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the SQLite database (default: DB_PATH or data.db)",
    )
    parser.add_argument(
        "--category",
        type=str,
        default=None,
        help="Only audit questions in this category",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=2000,
        help="Maximum number of stored questions to compare (default: 2000)",
    )
    parser.add_argument(
        "--max-word-difference",
        type=int,
        default=3,
        help="Flag pairs whose normalised word sets differ by at most this many words (default: 3)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON report",
    )
    return parser


def _finding_to_dict(finding: AuditFinding) -> Dict[str, Any]:
    return {
        "first": {"id": finding.first.get("id"), "question": finding.first.get("question")},
        "second": {"id": finding.second.get("id"), "question": finding.second.get("question")},
        "reason": finding.reason,
        "word_difference": finding.word_difference,
    }


def _group_by_category(questions: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for question in questions:
        grouped.setdefault(question.get("category") or "<none>", []).append(question)
    return grouped


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.db:
        db.DB_PATH = args.db
        db._pool = SQLiteConnectionPool(args.db, max_connections=2)
        db.init()

    engine = DedupEngine(
        DedupThresholds(audit_max_word_difference=max(0, int(args.max_word_difference)))
    )
    questions = db.list_questions(category=args.category, limit=max(1, int(args.limit)))

    findings: List[AuditFinding] = []
    for _, group in sorted(_group_by_category(questions).items()):
        findings.extend(engine.find_likely_duplicates(group))

    report = {
        "totals": {"questions": len(questions), "likely_duplicates": len(findings)},
        "pairs": [_finding_to_dict(finding) for finding in findings],
    }
    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)

    if findings:
        for finding in findings:
            print(
                f"Possible duplicate ({finding.reason}): "
                f"{finding.first.get('id')} <-> {finding.second.get('id')}"
            )
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
