"""Command-line interface."""

import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from geohisse.core.config import LikelihoodConfig
from geohisse.core.data import TipData
from geohisse.core.parameters import GeoHiSSEParameters, ParameterMapper
from geohisse.core.pruning import GeoHiSSEPruning
from geohisse.core.rate_matrix import RateMatrixIndex, build_rate_matrix
from geohisse.core.reconstruction import MarginalReconstruction
from geohisse.core.trees import load_tree

app = typer.Typer(help="GeoHiSSE likelihood engine")
console = Console()
logger = logging.getLogger(__name__)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )


def _load_model(model_file: Path):
    """
    Read a model description.

    Keys: hidden_traits, make_null, include_jumps, separate_extirpation,
    merge (list of label lists), drop (list of labels), assume_cladogenetic,
    widespread_tie, turnover, extinction_fraction, transition_rates, config.
    """
    spec = json.loads(Path(model_file).read_text())
    index = build_rate_matrix(
        hidden_traits=spec.get("hidden_traits", 0),
        make_null=spec.get("make_null", False),
        include_jumps=spec.get("include_jumps", False),
        separate_extirpation=spec.get("separate_extirpation", False),
    )
    if spec.get("drop"):
        index = index.drop(spec["drop"])
    if spec.get("merge"):
        index = index.merge(spec["merge"])
    mapper = ParameterMapper(
        index,
        assume_cladogenetic=spec.get("assume_cladogenetic", True),
        widespread_tie=spec.get("widespread_tie", "mean"),
    )
    params = GeoHiSSEParameters(
        turnover=spec["turnover"],
        extinction_fraction=spec["extinction_fraction"],
        transition_rates=spec["transition_rates"],
    )
    config = LikelihoodConfig.from_dict(spec.get("config", {}))
    return index, mapper, params, config


def _engine(tree_file: Path, data_file: Path, hisse_coding: bool, index, config):
    tree = load_tree(tree_file)
    tips = TipData.from_csv(data_file, coding="hisse" if hisse_coding else "labels")
    return GeoHiSSEPruning(tree, tips, index, config)


def _print_index(index: RateMatrixIndex):
    names = index.space.labels()
    table = Table(title=f"Rate matrix index ({index.n_parameters} parameters)")
    table.add_column("from \\ to", style="cyan")
    for name in names:
        table.add_column(name, justify="right")
    for i, name in enumerate(names):
        table.add_row(name, *[str(v) if v else "." for v in index.labels[i]])
    console.print(table)


@app.command()
def version():
    """Show version."""
    from geohisse import __version__
    console.print(f"geohisse version {__version__}")


@app.command()
def ratemat(
    hidden_traits: int = typer.Option(0, "--hidden-traits", "-H"),
    null: bool = typer.Option(False, "--null", help="Tie rates across hidden classes"),
    jumps: bool = typer.Option(False, "--jumps", help="Allow A <-> B jumps"),
    separate_extirpation: bool = typer.Option(False, "--separate-extirpation"),
):
    """Print the rate matrix index for a model configuration."""
    index = build_rate_matrix(hidden_traits, null, jumps, separate_extirpation)
    _print_index(index)
    for label, moves in index.describe().items():
        console.print(f"[green]q{label}[/green]: {', '.join(moves)}")


@app.command()
def loglik(
    tree_file: Path = typer.Argument(..., exists=True, help="Newick tree"),
    data_file: Path = typer.Argument(..., exists=True, help="CSV with taxon,range columns"),
    model_file: Path = typer.Argument(..., exists=True, help="JSON model description"),
    hisse_coding: bool = typer.Option(False, "--hisse-coding", help="Ranges coded 1=A, 2=B, 0=AB"),
):
    """Evaluate the log-likelihood of one parameter set."""
    index, mapper, params, config = _load_model(model_file)
    engine = _engine(tree_file, data_file, hisse_coding, index, config)
    result = engine.compute(mapper.map(params))
    if result.valid:
        console.print(f"log-likelihood: [bold]{result.log_likelihood:.6f}[/bold]")
    else:
        console.print(f"[red]log-likelihood: -inf ({escape(result.message)})[/red]")


@app.command()
def recon(
    tree_file: Path = typer.Argument(..., exists=True, help="Newick tree"),
    data_file: Path = typer.Argument(..., exists=True, help="CSV with taxon,range columns"),
    model_file: Path = typer.Argument(..., exists=True, help="JSON model description"),
    output: Path = typer.Option(Path("reconstruction.csv"), "--output", "-o"),
    by_range: bool = typer.Option(False, "--by-range", help="Sum over hidden classes"),
    hisse_coding: bool = typer.Option(False, "--hisse-coding"),
    include_tips: bool = typer.Option(True, "--tips/--no-tips"),
):
    """Write marginal state probabilities for every node to CSV."""
    index, mapper, params, config = _load_model(model_file)
    engine = _engine(tree_file, data_file, hisse_coding, index, config)
    result = MarginalReconstruction(engine).reconstruct(
        mapper.map(params), include_tips=include_tips
    )
    table = result.by_range() if by_range else result.probabilities
    table.to_csv(output)
    if not result.valid:
        console.print("[yellow]Down pass invalid; probabilities are undefined[/yellow]")
    logger.info("Results written to %s", output)
    console.print(f"Wrote {len(table)} rows to {output}")


if __name__ == "__main__":
    app()
