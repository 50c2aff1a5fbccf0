"""
Token Registry Audit Tool — independent consistency verification.

Connects directly to the registry database and re-derives every token's
level and rarity from its points under the configured scoring policy, and
checks the stacking lineage: every consumed token is claimed by exactly one
composite, and every composite's sources were consumed by it.

Usage:
    python -m scholar_tokens.registry.audit
    python -m scholar_tokens.registry.audit --database-url sqlite:///./tokens.db
    python -m scholar_tokens.registry.audit --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from scholar_tokens.config import settings
from scholar_tokens.domain.schema import ScoringPolicy
from scholar_tokens.registry.service import TokenRegistry

console = Console()


def run_audit(database_url: str, verbose: bool = False, policy: ScoringPolicy | None = None) -> bool:
    """
    Run a full registry consistency audit.

    Args:
        database_url: SQLAlchemy connection string.
        verbose: Print every problem found, not just the first ten.
        policy: Scoring policy to derive against (defaults to settings).

    Returns:
        True if the registry is consistent, False otherwise.
    """
    console.print("\n[bold blue]═══ Token Registry Consistency Audit ═══[/bold blue]\n")

    policy = policy or ScoringPolicy.from_settings(settings)
    registry = TokenRegistry(database_url)
    try:
        count = registry.get_token_count()
        console.print(f"  Tokens in registry: [bold]{count}[/bold]")

        if count == 0:
            console.print("[yellow]⚠ Registry is empty — no tokens to verify[/yellow]")
            return True

        console.print("  Verifying tokens...", end=" ")
        start_time = time.time()
        is_valid, checked, problems = registry.verify_consistency(policy)
        elapsed = time.time() - start_time
    finally:
        registry.dispose()

    if is_valid:
        console.print("[bold green]✓ CONSISTENT[/bold green]")
    else:
        console.print(f"[bold red]✗ {len(problems)} PROBLEM(S)[/bold red]")
    console.print(f"  Tokens verified: [bold]{checked}[/bold]")
    console.print(f"  Verification time: {elapsed:.3f}s")

    if problems:
        shown = problems if verbose else problems[:10]
        table = Table(show_lines=False)
        table.add_column("#", style="cyan", width=5)
        table.add_column("Problem", style="red")
        for index, problem in enumerate(shown, start=1):
            table.add_row(str(index), problem)
        console.print(table)
        if len(shown) < len(problems):
            console.print(f"[dim]  … {len(problems) - len(shown)} more (use --verbose)[/dim]")

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return is_valid


def main() -> None:
    parser = argparse.ArgumentParser(description="Scholar Tokens registry consistency auditor")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="List every problem found",
    )
    args = parser.parse_args()

    db_url = args.database_url or settings.database_url_sync
    is_valid = run_audit(db_url, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
