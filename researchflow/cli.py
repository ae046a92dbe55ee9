"""researchflow - iterative research with dependency-aware sub-questions

Simple CLI for running research queries.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from researchflow.agents.orchestrator import ResearchOrchestrator
from researchflow.errors import InvalidQueryError, NotConfiguredError
from researchflow.models.research import QueryComplexity
from researchflow.models.schemas import ResearchOptions


async def run_research(query: str, options: ResearchOptions) -> int:
    """Run research on the given query. Returns a process exit code."""
    print(f"Research query: {query}")
    print("-" * 50)

    orchestrator = ResearchOrchestrator()
    exit_code = 0

    async for event in orchestrator.research(query, options):
        event_type = event.type.value
        data = event.data

        if event_type == "classify":
            print(f"[*] Complexity: {data.get('complexity')} (confidence {data.get('confidence', 0):.2f})")

        elif event_type == "plan":
            sub_questions = data.get("sub_questions", [])
            print(f"\n[*] Research Plan ({len(sub_questions)} sub-questions):")
            for sq in sub_questions:
                deps = ", ".join(sq.get("depends_on", [])) or "-"
                print(f"  {sq['id']}: {sq['question'][:80]}")
                print(f"     Priority: {sq.get('priority')}  Depends on: {deps}")

        elif event_type == "search_start":
            print(f"\n[~] Round {data.get('round')}: searching {data.get('sub_question_id')}...")

        elif event_type == "search_complete":
            print(f"  [+] {data.get('sub_question_id')}: {data.get('citations_count')} citations")

        elif event_type == "search_failed":
            reason = data.get("reason") or data.get("error")
            print(f"  [-] {data.get('sub_question_id')} failed: {reason}")

        elif event_type == "synthesize_start":
            print(f"\n[+] Synthesizing round {data.get('round')} ({data.get('notes_count')} notes)", end="")

        elif event_type == "synthesize_progress":
            print(".", end="", flush=True)

        elif event_type == "gap_found":
            print(f"\n[?] Gap ({data.get('priority')}): {data.get('description')}")

        elif event_type == "round2_start":
            print(f"\n[~] Starting round 2 with {len(data.get('queries', []))} follow-up queries")

        elif event_type == "research_complete":
            metrics = data.get("metrics", {})
            print("\n\n[*] Research Complete!")
            print(f"   Runtime: {data.get('total_time_ms')}ms")
            print(f"   Queries: {metrics.get('total_queries')}")
            print(f"   Estimated cost: ${metrics.get('estimated_cost_usd', 0):.3f}")
            print(f"\n{'=' * 50}")
            print("ANSWER:")
            print(f"{'=' * 50}")
            print(data.get("answer", ""))
            citations = data.get("citations", [])
            if citations:
                print("\nSources:")
                for index, citation in enumerate(citations, 1):
                    print(f"  [{index}] {citation.get('title')} - {citation.get('url')}")

        elif event_type == "research_cancelled":
            print(f"\n[!] Cancelled: {data.get('reason', data.get('message'))}")
            exit_code = 130

        elif event_type == "error":
            print(f"\n[!] Error: {data.get('message', 'Unknown error')}")
            if data.get("detail"):
                print(f"    {data['detail']}")
            exit_code = 1

    return exit_code


def main():
    parser = argparse.ArgumentParser(description="researchflow research tool")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument(
        "--complexity",
        "-c",
        choices=[tier.value for tier in QueryComplexity],
        help="Skip classification and force a complexity tier",
    )
    parser.add_argument("--skip-round2", action="store_true", help="Single round of searches only")
    parser.add_argument("--max-cost", type=float, help="Cost ceiling in USD (default: from config)")

    args = parser.parse_args()
    if args.max_cost is not None and args.max_cost <= 0:
        parser.error("--max-cost must be positive")

    options = ResearchOptions(
        force_complexity=args.complexity,
        skip_round2=args.skip_round2,
        max_cost=args.max_cost,
    )
    try:
        exit_code = asyncio.run(run_research(args.query, options))
    except (InvalidQueryError, NotConfiguredError) as e:
        print(f"[!] {e}", file=sys.stderr)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
