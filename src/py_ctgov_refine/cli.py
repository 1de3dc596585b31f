# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Command-line interface for py-ctgov-refine.

Exit codes: 0 on success, including searches and refinements that match no
studies; 1 when a session or study does not exist; 2 when the source fails
or the input is invalid.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

import typer

from .config import Settings, get_settings
from .errors import CtgovError
from .formatting import format_study_list, format_study_summary
from .models.search import SearchParams
from .service import TrialsService, create_service

logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 1
EXIT_FAILURE = 2

app = typer.Typer(
    name="ctgov-refine",
    help="Search, store and progressively refine ClinicalTrials.gov studies.",
    no_args_is_help=True,
)


@app.callback()
def main(
    ctx: typer.Context,
    config_file: str = typer.Option(None, "--config", help="Path to YAML config file."),
):
    """Load settings and configure logging for every command."""
    settings = get_settings(config_file)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.obj = settings


@contextmanager
def _service(ctx: typer.Context) -> Iterator[TrialsService]:
    settings: Settings = ctx.obj
    service = create_service(settings)
    try:
        yield service
    except CtgovError as e:
        logger.error("Command failed: %s", e)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_FAILURE) from e
    finally:
        service.close()


def _session_not_found(session_id: str) -> typer.Exit:
    typer.echo(f"Session {session_id} not found. Run a search to start a new session.")
    return typer.Exit(code=EXIT_NOT_FOUND)


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Option(None, "--query", "-q", help="General search query."),
    condition: str = typer.Option(None, "--condition", "-c", help="Medical condition."),
    intervention: str = typer.Option(
        None, "--intervention", "-i", help="Treatment or intervention."
    ),
    phase: str = typer.Option(None, "--phase", "-p", help='Trial phase, e.g. "Phase 3".'),
    status: str = typer.Option(None, "--status", "-s", help="Recruitment status."),
    location: str = typer.Option(None, "--location", "-l", help="Geographic location."),
    sponsor: str = typer.Option(None, "--sponsor", help="Sponsor name."),
    page_size: Optional[int] = typer.Option(
        None, min=1, max=1000, help="Results per page. Defaults to the configured size."
    ),
    fetch_all: bool = typer.Option(False, "--all", help="Fetch every page of results."),
):
    """Search ClinicalTrials.gov and start a session on the results."""
    params = SearchParams(
        query=query,
        condition=condition,
        intervention=intervention,
        phase=phase,
        status=status,
        location=location,
        sponsor_search=sponsor,
        page_size=page_size or ctx.obj.default_page_size,
    )
    with _service(ctx) as service:
        outcome = service.search(params, fetch_all=fetch_all)

    if not outcome.studies:
        typer.echo("No studies matched this search.")
    else:
        typer.echo(format_study_list(outcome.studies, 10))
        if outcome.from_cache:
            typer.echo("(results served from cache)")
    typer.echo(f"Session ID: {outcome.session_id}")
    typer.echo(f'Use "ctgov-refine refine --session {outcome.session_id}" to refine results.')


@app.command()
def refine(
    ctx: typer.Context,
    session_id: str = typer.Option(..., "--session", help="Session ID from a previous search."),
    country: str = typer.Option(None, help="Location country contains."),
    state: str = typer.Option(None, help="Location state contains."),
    city: str = typer.Option(None, help="Location city contains."),
    keyword: str = typer.Option(None, help="Study keyword contains."),
    condition: str = typer.Option(None, help="Condition contains."),
    enrollment_min: int = typer.Option(None, help="Minimum enrollment."),
    enrollment_max: int = typer.Option(None, help="Maximum enrollment."),
    start_date_after: str = typer.Option(None, help="Start date on or after (YYYY-MM-DD)."),
    start_date_before: str = typer.Option(None, help="Start date on or before (YYYY-MM-DD)."),
    completion_date_after: str = typer.Option(None, help="Completion date on or after."),
    completion_date_before: str = typer.Option(None, help="Completion date on or before."),
    intervention_type: str = typer.Option(None, help="Intervention type, e.g. DRUG."),
    study_type: str = typer.Option(None, help="INTERVENTIONAL, OBSERVATIONAL, ..."),
    sex: str = typer.Option(None, help="Eligible sex: ALL, MALE or FEMALE."),
    sponsor_class: str = typer.Option(None, help="Lead sponsor class, e.g. INDUSTRY."),
    allocation: str = typer.Option(None, help="RANDOMIZED, NON_RANDOMIZED or NA."),
    intervention_model: str = typer.Option(None, help="PARALLEL, CROSSOVER, ..."),
    primary_purpose: str = typer.Option(None, help="TREATMENT, PREVENTION, ..."),
    masking: str = typer.Option(None, help="NONE, SINGLE, DOUBLE, TRIPLE or QUADRUPLE."),
    overall_status: str = typer.Option(None, help="Overall status, e.g. RECRUITING."),
    phase: str = typer.Option(None, help="Trial phase, e.g. PHASE3."),
    has_results: Optional[bool] = typer.Option(
        None, "--has-results/--no-results", help="Whether results are posted."
    ),
    healthy_volunteers: Optional[bool] = typer.Option(
        None,
        "--healthy-volunteers/--no-healthy-volunteers",
        help="Whether healthy volunteers are accepted.",
    ),
    fda_regulated: Optional[bool] = typer.Option(
        None, "--fda-regulated/--not-fda-regulated", help="FDA regulated drug or device."
    ),
    min_age: str = typer.Option(None, help='Minimum eligible age, e.g. "18 Years".'),
    max_age: str = typer.Option(None, help='Maximum eligible age, e.g. "75 Years".'),
    age_groups: str = typer.Option(
        None, help="Comma-separated age groups: CHILD,ADULT,OLDER_ADULT."
    ),
):
    """Narrow a session's studies without querying the source again."""
    criteria = {
        "location_country": country,
        "location_state": state,
        "location_city": city,
        "keyword": keyword,
        "condition": condition,
        "enrollment_min": enrollment_min,
        "enrollment_max": enrollment_max,
        "start_date_after": start_date_after,
        "start_date_before": start_date_before,
        "completion_date_after": completion_date_after,
        "completion_date_before": completion_date_before,
        "intervention_type": intervention_type,
        "study_type": study_type,
        "sex": sex,
        "sponsor_class": sponsor_class,
        "allocation": allocation,
        "intervention_model": intervention_model,
        "primary_purpose": primary_purpose,
        "masking": masking,
        "overall_status": overall_status,
        "phase": phase,
        "has_results": has_results,
        "healthy_volunteers": healthy_volunteers,
        "fda_regulated": fda_regulated,
        "min_age": min_age,
        "max_age": max_age,
        "age_groups": [g.strip() for g in age_groups.split(",") if g.strip()]
        if age_groups
        else None,
    }
    criteria = {key: value for key, value in criteria.items() if value is not None}

    with _service(ctx) as service:
        outcome = service.refine(session_id, criteria)

    if outcome is None:
        raise _session_not_found(session_id)
    typer.echo(f"Filtered from {outcome.previous_count} to {outcome.new_count} studies.")
    if outcome.new_count == 0:
        typer.echo("No studies match these filters.")
        return
    typer.echo(format_study_list(outcome.studies, 10))


@app.command()
def details(
    ctx: typer.Context,
    nct_id: str = typer.Argument(..., help="NCT ID of the study, e.g. NCT01234567."),
    eligibility: bool = typer.Option(
        True, "--eligibility/--no-eligibility", help="Include eligibility criteria."
    ),
):
    """Show the full record of one study."""
    with _service(ctx) as service:
        study = service.get_details(nct_id)
    if study is None:
        typer.echo(f"Study {nct_id} not found.")
        raise typer.Exit(code=EXIT_NOT_FOUND)
    typer.echo(format_study_summary(study, include_eligibility=eligibility))


@app.command()
def summarize(
    ctx: typer.Context,
    session_id: str = typer.Option(..., "--session", help="Session ID."),
    max_results: int = typer.Option(10, min=1, help="Studies to list."),
):
    """List the studies currently held by a session."""
    with _service(ctx) as service:
        summary = service.summarize(session_id, max_results)
    if summary is None:
        raise _session_not_found(session_id)
    typer.echo(summary)


@app.command()
def export(
    ctx: typer.Context,
    session_id: str = typer.Option(..., "--session", help="Session ID."),
    fmt: str = typer.Option("csv", "--format", "-f", help="csv, json or jsonl."),
    output: str = typer.Option(None, "--output", "-o", help="Output file name or path."),
    columns: str = typer.Option(
        None, help="Comma-separated extra CSV columns, e.g. MinAge,MaxAge,Sex."
    ),
):
    """Export a session's studies to a file."""
    destination = output or f"{session_id}.{fmt.lower()}"
    extra = [c.strip() for c in columns.split(",") if c.strip()] if columns else None
    with _service(ctx) as service:
        path = service.export(session_id, fmt, destination, extra)
    if path is None:
        raise _session_not_found(session_id)
    typer.echo(f"Exported to {path}")


@app.command("local-search")
def local_search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Full-text query over stored studies."),
    limit: int = typer.Option(100, min=1, help="Maximum number of studies."),
):
    """Full-text search over studies already in the local store."""
    with _service(ctx) as service:
        studies = service.local_search(query, limit)
    if not studies:
        typer.echo("No stored studies matched this query.")
        return
    typer.echo(format_study_list(studies, limit))


@app.command()
def backfill(ctx: typer.Context):
    """Re-project stored studies whose flattened columns are out of date."""
    with _service(ctx) as service:
        report = service.backfill()
    typer.echo(f"Updated {report.updated} studies, skipped {len(report.skipped)}.")
    for nct_id, reason in report.skipped.items():
        typer.echo(f"  {nct_id}: {reason}")


@app.command()
def info(ctx: typer.Context):
    """Show the source API version and local store and cache counts."""
    with _service(ctx) as service:
        status = service.info()
    for key, value in status.items():
        typer.echo(f"{key}: {value}")


@app.command("cache-clear")
def cache_clear(ctx: typer.Context):
    """Delete every cached API response. The audit log is kept."""
    with _service(ctx) as service:
        service.clear_cache()
    typer.echo("Cache cleared.")


@app.command("cache-prune")
def cache_prune(ctx: typer.Context):
    """Delete expired cached API responses."""
    with _service(ctx) as service:
        removed = service.prune_cache()
    typer.echo(f"Removed {removed} expired cache entries.")


if __name__ == "__main__":
    app()
