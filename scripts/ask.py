#!/usr/bin/env python3
"""Ask the knowledge base a single question from the command line."""
from __future__ import annotations

import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.kbqa.config import configure_logging, settings
from src.kbqa.errors import KBQAError
from src.kbqa.pipeline import QueryOrchestrator


def main() -> None:
    question = " ".join(sys.argv[1:]).strip()
    if not question:
        print("Usage: ask.py <question>")
        sys.exit(1)

    configure_logging(settings.log_level)
    orchestrator = QueryOrchestrator.from_settings(settings)
    try:
        result = orchestrator.query(question)
    except KBQAError as exc:
        print(f"Error: {exc.message}")
        sys.exit(2)

    print(result.answer)
    if result.citations:
        print("\nReferences:")
        for ref in result.citations:
            print(f"  [{ref.number}] {ref.title}")


if __name__ == "__main__":
    main()
