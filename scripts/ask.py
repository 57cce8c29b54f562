#!/usr/bin/env python
"""Ask a question about the indexed documents and stream the answer.

Usage:
    python scripts/ask.py "How do I configure the build?"
    python scripts/ask.py "What changed in v2?" --top-k 8 --min-score 0.6
    python scripts/ask.py "Why does this fail?" --code src/build.py
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docent import config
from docent.assistant import Assistant
from docent.logging_setup import configure_logging
from docent.rag.orchestrator import Answer, QueryState


class TerminalSink:
    """Prints streamed deltas as they arrive."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def on_state(self, state: QueryState) -> None:
        if self.verbose:
            print(f"[{state.value}]", file=sys.stderr)

    def on_delta(self, text: str) -> None:
        print(text, end="", flush=True)

    def on_complete(self, answer: Answer) -> None:
        print()

    def on_cancelled(self) -> None:
        print("\n[cancelled]")


async def main():
    parser = argparse.ArgumentParser(description="Ask a question about the indexed documents")
    parser.add_argument("question", help="Question to answer")
    parser.add_argument(
        "--top-k",
        type=int,
        default=config.RETRIEVAL_TOP_K,
        help=f"Chunks to retrieve (default: {config.RETRIEVAL_TOP_K})",
    )
    parser.add_argument(
        "--min-score",
        type=float,
        default=config.RETRIEVAL_MIN_SCORE,
        help=f"Minimum similarity (default: {config.RETRIEVAL_MIN_SCORE})",
    )
    parser.add_argument(
        "--code", type=Path, help="Source file to include; a suggested revision is printed"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show query states")
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "WARNING")

    with Assistant() as assistant:
        answer = await assistant.orchestrator.answer(
            args.question,
            sink=TerminalSink(verbose=args.verbose),
            code=args.code.read_text() if args.code else None,
            k=args.top_k,
            min_score=args.min_score,
        )

    if answer.state is QueryState.FAILED:
        print(f"\nError: {answer.error}\n", file=sys.stderr)
        sys.exit(1)

    if answer.sources:
        print("\nSources:")
        for source in answer.sources:
            labels = ", ".join(source["labels"])
            suffix = f" ({labels})" if labels else ""
            print(f"  [{source['rank']}] {source['path']}{suffix}  score={source['score']}")
    else:
        print("\nNo matching documents were found.")

    if answer.code_patch:
        print("\nSuggested code:")
        print(answer.code_patch)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(130)
