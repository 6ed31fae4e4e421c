#!/usr/bin/env python3
"""CLI helper that ingests an extracted document JSON file into the index."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv() -> None:
    project_root = Path(__file__).resolve().parents[1]
    env_file = project_root / ".env"
    if env_file.exists():
        load_dotenv(dotenv_path=env_file)
    else:  # pragma: no cover - fallback path
        load_dotenv()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("path", type=Path, help="JSON file with 'pages' (and optional 'title', 'default_chapter_id').")
    parser.add_argument("--document-id", help="Defaults to the 'document_id' field or the file stem.")
    parser.add_argument("--board", help="Defaults to the 'board' field of the payload.")
    parser.add_argument("--grade", help="Defaults to the 'grade' field of the payload.")
    parser.add_argument("--subject", help="Defaults to the 'subject' field of the payload.")
    parser.add_argument("--remove", action="store_true", help="Remove the document instead of ingesting it.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    _load_dotenv()
    args = _parse_args(argv)

    project_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(project_root / "src"))

    from tutor.errors import IngestionError  # noqa: WPS433
    from tutor.logging_config import configure_logging  # noqa: WPS433
    from tutor.services.tutor import TutorService  # noqa: WPS433
    from tutor.vectorstore import VectorStoreUnavailableError  # noqa: WPS433

    configure_logging()

    try:
        payload = json.loads(args.path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        logging.error("Could not read %s: %s", args.path, error)
        return 2

    document_id = args.document_id or payload.get("document_id") or args.path.stem
    board = args.board or payload.get("board")
    grade = args.grade or payload.get("grade")
    subject = args.subject or payload.get("subject")

    service = TutorService()
    try:
        if args.remove:
            version = service.remove_document(document_id)
            if version is None:
                logging.warning("Document %s was not ingested", document_id)
                return 1
            logging.info("Removed document %s (version %s)", document_id, version.version_number)
            return 0

        if not (board and grade and subject):
            logging.error("board, grade and subject are required")
            return 2
        version = service.ingest_document(document_id, str(board), str(grade), str(subject), payload)
    except (IngestionError, VectorStoreUnavailableError) as error:
        logging.error("Ingestion of %s failed: %s", document_id, error)
        return 1

    logging.info(
        "Document %s is at version %s with %s units", document_id, version.version_number, len(version.unit_ids)
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
