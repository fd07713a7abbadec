"""CLI application using Typer for publication-bias analyses."""

from pathlib import Path
from typing import Optional

import numpy as np
import typer
from rich.console import Console
from rich.table import Table

from ..bias.asymmetry import egger_test
from ..bias.trimfill import trimfill
from ..config.settings import settings
from ..core.errors import PubBiasError
from ..core.models import (
    LOG_SCALE_MEASURES,
    EstimatorType,
    MetaSummary,
    PoolingModel,
    Side,
    TauMethod,
    TrimFillOptions,
)
from ..core.studyset import StudySet
from ..io.tables import read_studies_csv, write_result
from ..meta.analyzer import pool
from ..utils.logging import get_logger

app = typer.Typer(
    name="pubbias",
    help="Publication bias adjustment for meta-analysis (trim-and-fill)",
    add_completion=False,
)

console = Console(width=settings.console_width)
logger = get_logger(__name__)


def _fmt(value: Optional[float], backtransf: bool = False) -> str:
    if value is None or not np.isfinite(value):
        return "-"
    if backtransf:
        value = float(np.exp(value))
    return f"{value:.{settings.display_digits}f}"


def _load(
    effects_csv: Path,
    effect_col: str,
    se_col: str,
    study_col: str,
    exclude_col: Optional[str],
) -> StudySet:
    try:
        return read_studies_csv(
            effects_csv,
            effect_col=effect_col,
            se_col=se_col,
            study_col=study_col,
            exclude_col=exclude_col,
        )
    except PubBiasError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)


def _summary_table(meta: MetaSummary, title: str, show_fixed: bool, show_random: bool, backtransf: bool) -> Table:
    table = Table(title=title)
    table.add_column("Model", style="cyan")
    table.add_column("Estimate", justify="right")
    table.add_column(f"{int(round(meta.level_comb * 100))}% CI", justify="right")
    table.add_column("Statistic", justify="right")
    table.add_column("p-value", justify="right")
    rows = []
    if show_fixed:
        rows.append(("Fixed effect", meta.fixed))
    if show_random:
        rows.append(("Random effects", meta.random))
    for name, est in rows:
        table.add_row(
            name,
            _fmt(est.effect, backtransf),
            f"[{_fmt(est.lower, backtransf)}; {_fmt(est.upper, backtransf)}]",
            _fmt(est.statistic),
            _fmt(est.pvalue),
        )
    if meta.prediction and meta.lower_predict is not None:
        table.add_row(
            "Prediction interval",
            "",
            f"[{_fmt(meta.lower_predict, backtransf)}; {_fmt(meta.upper_predict, backtransf)}]",
            "",
            "",
        )
    return table


def _heterogeneity_table(meta: MetaSummary) -> Table:
    table = Table(title="Heterogeneity")
    table.add_column("Measure", style="cyan")
    table.add_column("Value", justify="right")
    table.add_column("CI", justify="right")
    table.add_row("tau^2", _fmt(meta.tau2), f"[{_fmt(meta.lower_tau2)}; {_fmt(meta.upper_tau2)}]")
    table.add_row("tau", _fmt(meta.tau), f"[{_fmt(meta.lower_tau)}; {_fmt(meta.upper_tau)}]")
    table.add_row("I^2", _fmt(meta.I2.value), f"[{_fmt(meta.I2.lower)}; {_fmt(meta.I2.upper)}]")
    table.add_row("H", _fmt(meta.H.value), f"[{_fmt(meta.H.lower)}; {_fmt(meta.H.upper)}]")
    table.add_row("Rb", _fmt(meta.Rb.value), f"[{_fmt(meta.Rb.lower)}; {_fmt(meta.Rb.upper)}]")
    table.add_row("Q", _fmt(meta.Q), f"df = {meta.df_Q}, p = {_fmt(meta.pval_Q)}")
    return table


@app.command()
def version() -> None:
    """Show version information."""
    from .. import __version__
    console.print(f"pubbias v{__version__}")


# -----------------------------------------------------------------------------
# Trim-and-fill command
# -----------------------------------------------------------------------------

@app.command("trimfill")
def trimfill_command(
    effects_csv: Path = typer.Argument(..., help="CSV file with effect sizes", exists=True),
    effect_col: str = typer.Option("effect", help="Column name for effect estimates"),
    se_col: str = typer.Option("se", help="Column name for standard errors"),
    study_col: str = typer.Option("study_id", help="Column name for study identifiers"),
    exclude_col: Optional[str] = typer.Option(None, help="Column flagging studies excluded from pooling"),
    side: Optional[Side] = typer.Option(None, "--side", help="Side with missing studies (default: Egger's test)"),
    model: PoolingModel = typer.Option(PoolingModel.FIXED, "--model", help="Model for estimating missing studies"),
    estimator: EstimatorType = typer.Option(EstimatorType.L, "--estimator", help="L or R estimator"),
    max_iter: int = typer.Option(50, "--max-iter", min=1, help="Maximum number of iterations"),
    level: float = typer.Option(0.95, "--level", help="Confidence level"),
    prediction: bool = typer.Option(False, "--prediction/--no-prediction", help="Show prediction interval"),
    hakn: bool = typer.Option(False, "--hakn/--no-hakn", help="Hartung-Knapp adjustment"),
    method_tau: TauMethod = typer.Option(TauMethod.DL, "--method-tau", help="Estimator of tau^2"),
    sm: str = typer.Option("", "--sm", help="Summary measure, e.g. OR, RR, MD, SMD"),
    fixed: bool = typer.Option(False, "--fixed/--no-fixed", help="Show fixed effect summary"),
    random: bool = typer.Option(True, "--random/--no-random", help="Show random effects summary"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every iteration"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="CSV file for the per-study table"),
) -> None:
    """
    Adjust a meta-analysis for publication bias with trim-and-fill.

    The input CSV must contain columns for study identifiers, effect
    estimates and standard errors.  Missing studies are estimated,
    mirrored pseudo-studies are added and the data are pooled again.
    """
    console.print("[bold blue]Running trim-and-fill[/bold blue]")
    studies = _load(effects_csv, effect_col, se_col, study_col, exclude_col)
    options = TrimFillOptions(
        side=side,
        estimation_model=model,
        estimator=estimator,
        max_iterations=max_iter,
        level=level,
        prediction=prediction,
        hakn=hakn,
        method_tau=method_tau,
        sm=sm,
        comb_fixed=fixed,
        comb_random=random,
        verbose=verbose,
    )
    try:
        result = trimfill(studies, options)
    except PubBiasError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)
    if result is None:
        console.print("[red]Error: trim-and-fill requires at least three usable studies[/red]")
        raise typer.Exit(1)

    backtransf = options.backtransf and options.sm in LOG_SCALE_MEASURES
    console.print(f"Studies: {result.meta.k - result.k0} observed, {result.k0} added ({result.side.value} side)")
    console.print(f"Iterations: {result.iterations} ({result.status.value})")
    if result.n_missing:
        console.print(f"[yellow]{result.n_missing} observation(s) dropped due to missing values[/yellow]")
    if result.k0 > 0:
        filled = Table(title="Filled studies")
        filled.add_column("Study", style="cyan")
        filled.add_column("Effect", justify="right")
        filled.add_column("SE", justify="right")
        studies_out = result.studies
        for i in np.flatnonzero(studies_out.imputed):
            filled.add_row(
                studies_out.labels[i],
                _fmt(studies_out.effects[i], backtransf),
                _fmt(studies_out.ses[i]),
            )
        console.print(filled)
    console.print(
        _summary_table(
            result.meta,
            f"Trim-and-fill summary ({result.meta.k} studies)",
            options.comb_fixed,
            options.comb_random,
            backtransf,
        )
    )
    console.print(_heterogeneity_table(result.meta))
    if output is not None:
        summary_path = write_result(result, output)
        console.print(f"[green]✓ Results saved to {output} and {summary_path}[/green]")


# -----------------------------------------------------------------------------
# Plain meta-analysis and asymmetry test
# -----------------------------------------------------------------------------

@app.command("pool")
def pool_command(
    effects_csv: Path = typer.Argument(..., help="CSV file with effect sizes", exists=True),
    effect_col: str = typer.Option("effect", help="Column name for effect estimates"),
    se_col: str = typer.Option("se", help="Column name for standard errors"),
    study_col: str = typer.Option("study_id", help="Column name for study identifiers"),
    exclude_col: Optional[str] = typer.Option(None, help="Column flagging studies excluded from pooling"),
    level: float = typer.Option(0.95, "--level", help="Confidence level"),
    method_tau: TauMethod = typer.Option(TauMethod.DL, "--method-tau", help="Estimator of tau^2"),
    hakn: bool = typer.Option(False, "--hakn/--no-hakn", help="Hartung-Knapp adjustment"),
    prediction: bool = typer.Option(False, "--prediction/--no-prediction", help="Show prediction interval"),
    sm: str = typer.Option("", "--sm", help="Summary measure, e.g. OR, RR, MD, SMD"),
) -> None:
    """Pool effect sizes with fixed and random effects models."""
    studies = _load(effects_csv, effect_col, se_col, study_col, exclude_col)
    try:
        meta = pool(studies, level=level, method_tau=method_tau, hakn=hakn, prediction=prediction, sm=sm)
    except PubBiasError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)
    backtransf = sm.strip().upper() in LOG_SCALE_MEASURES
    console.print(_summary_table(meta, f"Meta-analysis ({meta.k} studies)", True, True, backtransf))
    console.print(_heterogeneity_table(meta))


@app.command("egger")
def egger_command(
    effects_csv: Path = typer.Argument(..., help="CSV file with effect sizes", exists=True),
    effect_col: str = typer.Option("effect", help="Column name for effect estimates"),
    se_col: str = typer.Option("se", help="Column name for standard errors"),
    study_col: str = typer.Option("study_id", help="Column name for study identifiers"),
) -> None:
    """Egger's regression test for funnel plot asymmetry."""
    studies = _load(effects_csv, effect_col, se_col, study_col, None)
    sel = studies.usable_mask()
    try:
        test = egger_test(studies.effects[sel], studies.ses[sel])
    except PubBiasError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)
    table = Table(title=f"Egger's test ({test.k} studies)")
    table.add_column("Bias", justify="right")
    table.add_column("SE", justify="right")
    table.add_column("t", justify="right")
    table.add_column("df", justify="right")
    table.add_column("p-value", justify="right")
    table.add_row(_fmt(test.bias), _fmt(test.se_bias), _fmt(test.statistic), str(test.df), _fmt(test.pvalue))
    console.print(table)
    side = Side.LEFT if test.bias > 0 else Side.RIGHT
    console.print(f"Studies presumably missing on the [bold]{side.value}[/bold] side")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
