"""Integration orchestrator for the regional ITV registries.

Runs adapt, extract, resolve, validate and persist for each region.
Regions run sequentially and independently: a failure in one region does
not touch what a previous region already handed to the repository.

Only an unreadable source (FormatError, EncodingError) or a failed
province/locality save (LoadError) fails a region. Everything else is
per-record and ends up in the region's counts and the operational log.

Usage:
    python -m itv_integration.ingest --all
    python -m itv_integration.ingest --region cv --dry-run
    python -m itv_integration.ingest --all --geocoder none --auto-correct
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import enum
import logging
import sys
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

import snowflake.connector

from itv_integration.config import (
    REGION_IDS,
    GeocoderProvider,
    get_region_by_id,
    load_geocoding_settings,
)
from itv_integration.contracts import CONTRACTS
from itv_integration.extract import get_extractor
from itv_integration.geocode import Geocoder, NullGeocoder, build_geocoder
from itv_integration.load import (
    InMemoryRepository,
    LoadError,
    SnowflakeConnectionManager,
    SnowflakeRepository,
    StationRepository,
)
from itv_integration.models import Province, Station
from itv_integration.resolve import merge_provinces, resolve
from itv_integration.transform import FormatError, adapt
from itv_integration.validate import screen_stations

logger: Final[logging.Logger] = logging.getLogger(__name__)


# ---- Enums ------------------------------------------------------------------


class RunStage(enum.Enum):
    """Stage a region run reached."""

    ADAPT = "ADAPT"
    EXTRACT = "EXTRACT"
    RESOLVE = "RESOLVE"
    VALIDATE = "VALIDATE"
    PERSIST = "PERSIST"


class RegionStatus(enum.Enum):
    """Outcome status for a single region."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# ---- Result dataclasses -----------------------------------------------------


@dataclass(frozen=True, slots=True)
class RegionResult:
    """Outcome of integrating one region's source file.

    Attributes:
        region_id: Region identifier.
        stage: Last stage attempted.
        status: Final outcome status.
        records: Canonical records read from the source.
        provinces: Provinces resolved for the run.
        localities: Localities resolved and persisted.
        stations_saved: Stations handed to the repository successfully.
        stations_rejected: Stations rejected by validation.
        stations_failed: Valid stations whose save failed.
        stations_corrected: Stations changed by auto-correction.
        unresolved_references: Localities dropped for a missing province.
        linkage_warnings: Stations left without a locality code.
        elapsed_seconds: Wall-clock time for the region.
        error_message: Description of failure, if any.
    """

    region_id: str
    stage: RunStage
    status: RegionStatus
    records: int = 0
    provinces: int = 0
    localities: int = 0
    stations_saved: int = 0
    stations_rejected: int = 0
    stations_failed: int = 0
    stations_corrected: int = 0
    unresolved_references: int = 0
    linkage_warnings: int = 0
    elapsed_seconds: float = 0.0
    error_message: str = ""

    @property
    def success(self) -> bool:
        return self.status is RegionStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Aggregate outcome of integrating several regions.

    Attributes:
        regions: Per-region results in run order.
        total_stations_saved: Sum of saved stations across regions.
        total_elapsed_seconds: Wall-clock time for the full run.
        success: True only if every region succeeded.
    """

    regions: list[RegionResult] = field(default_factory=list)
    total_stations_saved: int = 0
    total_elapsed_seconds: float = 0.0
    success: bool = True


@dataclass(frozen=True, slots=True)
class IntegrationOutcome:
    """Status and message returned to whatever triggered the run."""

    success: bool
    message: str


# ---- Persistence steps ------------------------------------------------------


def _save_provinces(repository: StationRepository, provinces: Sequence[Province]) -> int:
    """Save provinces the repository does not hold yet; return how many."""
    saved = 0
    for province in provinces:
        if repository.province_exists(province.code):
            logger.debug("Province %d (%s) exists, skipping", province.code, province.name)
            continue
        repository.save_province(province)
        saved += 1
        logger.info("Saved province %s (%d)", province.name, province.code)
    return saved


def _save_stations(
    repository: StationRepository, stations: Sequence[Station]
) -> tuple[int, int]:
    """Save stations one by one; return (saved, failed).

    A LoadError or a raw connector error fails only the station at hand.
    """
    saved = 0
    failed = 0
    for station in stations:
        try:
            repository.save_station(station)
        except (LoadError, snowflake.connector.errors.Error) as exc:
            failed += 1
            logger.error("Failed to save station '%s': %s", station.name, exc)
            continue
        saved += 1
        logger.debug("Saved station '%s'", station.name)
    logger.info("Stations saved: %d, failed: %d", saved, failed)
    return saved, failed


# ---- Region run -------------------------------------------------------------


class RegionRunError(Exception):
    """Wraps a fatal region error with the stage it happened in."""

    def __init__(self, stage: RunStage, cause: Exception) -> None:
        self.stage: Final[RunStage] = stage
        self.cause: Final[Exception] = cause
        super().__init__(str(cause))


def run_region(
    region_id: str,
    repository: StationRepository,
    geocoder: Geocoder | None = None,
    *,
    auto_correct: bool = False,
    source_path: Path | None = None,
) -> RegionResult:
    """Integrate one region's source file into the repository.

    Args:
        region_id: Region identifier (``cv``, ``gal``, ``cat``).
        repository: Persistence boundary receiving the entities.
        geocoder: Lookup collaborator for regions without coordinates.
        auto_correct: Null out-of-range coordinates before the final
            validation instead of rejecting those stations.
        source_path: Overrides the configured source file.

    Returns:
        RegionResult with SUCCESS status and per-record counts.

    Raises:
        KeyError: If the region id is unknown.
        RegionRunError: If the source is unreadable or a province or
            locality cannot be saved.
    """
    start = time.monotonic()
    config = get_region_by_id(region_id)
    path = source_path if source_path is not None else config.source_path
    logger.info("[%s] Integrating %s from %s", region_id, config.name, path)

    try:
        adapted = adapt(path, CONTRACTS[region_id], config.encodings, config.delimiter)
    except FormatError as exc:
        raise RegionRunError(RunStage.ADAPT, exc) from exc

    extraction = get_extractor(
        region_id, adapted.records, geocoder or NullGeocoder()
    ).extract()
    logger.info(
        "[%s] Extracted %d provinces, %d localities, %d stations",
        region_id,
        len(extraction.provinces),
        len(extraction.localities),
        len(extraction.stations),
    )

    try:
        _save_provinces(repository, merge_provinces(extraction.provinces))
        resolution = resolve(extraction, repository)
    except LoadError as exc:
        raise RegionRunError(RunStage.RESOLVE, exc) from exc

    screening = screen_stations(resolution.stations, correct=auto_correct)
    saved, failed = _save_stations(repository, screening.accepted)

    elapsed = time.monotonic() - start
    return RegionResult(
        region_id=region_id,
        stage=RunStage.PERSIST,
        status=RegionStatus.SUCCESS,
        records=len(adapted.records),
        provinces=len(resolution.provinces),
        localities=len(resolution.localities),
        stations_saved=saved,
        stations_rejected=len(screening.rejected),
        stations_failed=failed,
        stations_corrected=screening.corrected,
        unresolved_references=len(resolution.unresolved),
        linkage_warnings=len(resolution.linkage_warnings),
        elapsed_seconds=round(elapsed, 3),
    )


def run_pipeline(
    region_ids: Sequence[str] | None,
    repository: StationRepository,
    geocoder: Geocoder | None = None,
    *,
    auto_correct: bool = False,
) -> PipelineResult:
    """Integrate regions sequentially, isolating per-region failures.

    Args:
        region_ids: Regions to run. None runs all three.
        repository: Persistence boundary shared by every region.
        geocoder: Lookup collaborator.
        auto_correct: Enable the coordinate auto-correct pre-pass.

    Returns:
        PipelineResult with per-region outcomes.
    """
    pipeline_start = time.monotonic()
    results: list[RegionResult] = []
    all_success = True

    for region_id in region_ids or REGION_IDS:
        region_start = time.monotonic()
        try:
            result = run_region(
                region_id, repository, geocoder, auto_correct=auto_correct
            )
        except RegionRunError as exc:
            elapsed = time.monotonic() - region_start
            results.append(
                RegionResult(
                    region_id=region_id,
                    stage=exc.stage,
                    status=RegionStatus.FAILED,
                    elapsed_seconds=round(elapsed, 3),
                    error_message=str(exc),
                )
            )
            all_success = False
            logger.error("FAILED [%s] %s: %s", region_id, exc.stage.value, exc)
            continue

        results.append(result)
        logger.info("SUCCESS [%s] in %.1fs", region_id, result.elapsed_seconds)

    return PipelineResult(
        regions=results,
        total_stations_saved=sum(r.stations_saved for r in results),
        total_elapsed_seconds=round(time.monotonic() - pipeline_start, 3),
        success=all_success,
    )


# ---- Trigger boundary -------------------------------------------------------


def describe_region(result: RegionResult) -> str:
    """One-line human-readable summary of a region run."""
    if not result.success:
        return f"{result.region_id}: failed at {result.stage.value}: {result.error_message}"
    return (
        f"{result.region_id}: {result.stations_saved} stations saved, "
        f"{result.stations_rejected} rejected, {result.stations_failed} failed"
    )


def integrate_region(
    region_id: str,
    repository: StationRepository,
    geocoder: Geocoder | None = None,
    *,
    auto_correct: bool = False,
) -> IntegrationOutcome:
    """Integrate one region and report a single status plus message."""
    if region_id not in REGION_IDS:
        valid = ", ".join(REGION_IDS)
        return IntegrationOutcome(
            success=False,
            message=f"Unknown region '{region_id}'. Valid regions: {valid}",
        )
    result = run_pipeline(
        [region_id], repository, geocoder, auto_correct=auto_correct
    )
    return IntegrationOutcome(
        success=result.success, message=describe_region(result.regions[0])
    )


def integrate_all(
    repository: StationRepository,
    geocoder: Geocoder | None = None,
    *,
    auto_correct: bool = False,
) -> IntegrationOutcome:
    """Integrate every region in order and report one combined outcome."""
    result = run_pipeline(None, repository, geocoder, auto_correct=auto_correct)
    lines = [describe_region(r) for r in result.regions]
    return IntegrationOutcome(success=result.success, message="; ".join(lines))


# ---- CLI ---------------------------------------------------------------------


@contextlib.contextmanager
def _open_repository(dry_run: bool) -> Iterator[StationRepository]:
    """Yield an in-memory repository for dry runs, Snowflake otherwise."""
    if dry_run:
        yield InMemoryRepository()
        return
    with SnowflakeConnectionManager() as conn:
        repository = SnowflakeRepository(conn)
        repository.ensure_schema()
        yield repository


def _build_arg_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the integration CLI."""
    parser = argparse.ArgumentParser(
        description="Integrate regional ITV station registries.",
    )
    parser.add_argument(
        "--all",
        dest="run_all",
        action="store_true",
        help="Integrate all three regions.",
    )
    parser.add_argument(
        "--region",
        choices=REGION_IDS,
        default=None,
        help="Integrate a single region.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Persist to an in-memory repository instead of Snowflake.",
    )
    parser.add_argument(
        "--auto-correct",
        action="store_true",
        help="Null out-of-range coordinates instead of rejecting stations.",
    )
    parser.add_argument(
        "--geocoder",
        choices=[p.value for p in GeocoderProvider],
        default=None,
        help="Override the ITV_GEOCODER provider.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug-level logging.",
    )
    return parser


def _print_summary(result: PipelineResult) -> None:
    """Print structured execution summary to stdout."""
    header = (
        f"{'Region':<8} {'Stage':<10} {'Status':<9} {'Saved':<7} "
        f"{'Rejected':<9} {'Failed':<7} {'Unlinked':<9} {'Time (s)'}"
    )
    print(f"\n{'=' * 80}")
    print("ITV Integration Summary")
    print(f"{'=' * 80}")
    print(header)
    print("-" * 80)

    for region in result.regions:
        print(
            f"{region.region_id:<8} "
            f"{region.stage.value:<10} "
            f"{region.status.value:<9} "
            f"{region.stations_saved:<7} "
            f"{region.stations_rejected:<9} "
            f"{region.stations_failed:<7} "
            f"{region.linkage_warnings:<9} "
            f"{region.elapsed_seconds:.1f}"
        )

    print("-" * 80)
    print(
        f"Total saved: {result.total_stations_saved}  "
        f"Elapsed: {result.total_elapsed_seconds:.1f}s  "
        f"Result: {'SUCCESS' if result.success else 'FAILED'}"
    )
    print(f"{'=' * 80}\n")


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the integration pipeline.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code: 0 if all regions succeed, 1 if any fail.
    """
    parser = _build_arg_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
    )

    if not args.run_all and args.region is None:
        parser.error("Specify --all or --region <id>")
        return 1

    try:
        settings = load_geocoding_settings()
    except ValueError as exc:
        parser.error(str(exc))
        return 1
    if args.geocoder is not None:
        settings = dataclasses.replace(
            settings, provider=GeocoderProvider(args.geocoder)
        )

    region_ids = None if args.run_all else [args.region]
    geocoder = build_geocoder(settings)
    try:
        with _open_repository(args.dry_run) as repository:
            result = run_pipeline(
                region_ids, repository, geocoder, auto_correct=args.auto_correct
            )
    except LoadError as exc:
        logger.error("Repository unavailable: %s", exc)
        return 1
    finally:
        close = getattr(geocoder, "close", None)
        if close is not None:
            close()

    _print_summary(result)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
