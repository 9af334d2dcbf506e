"""Extraction pipeline — run every available probe into the metadata store."""

from __future__ import annotations

import logging
from contextlib import closing
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterator

from chronicle.errors import ExtractionError
from chronicle.models import SessionMetadata, SessionRef
from chronicle.probes import ProbeRegistry
from chronicle.probes.base import Probe
from chronicle.store import MetadataStore

logger = logging.getLogger(__name__)


@dataclass
class ProbeReport:
    probe_id: str
    discovered: int = 0
    extracted: int = 0
    skipped: int = 0
    skipped_records: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ExtractionReport:
    probes: list[ProbeReport] = field(default_factory=list)
    duplicates_found: int = 0

    @property
    def extracted(self) -> int:
        return sum(p.extracted for p in self.probes)

    @property
    def skipped(self) -> int:
        return sum(p.skipped for p in self.probes)


@dataclass
class _ProbeResult:
    """Discovery and extraction output for one probe, ready to be written."""

    report: ProbeReport
    sessions: list[tuple[SessionRef, SessionMetadata]] = field(default_factory=list)
    discovery_failed: bool = False


def _extract_probe(probe: Probe) -> _ProbeResult:
    """Discover and extract one probe's sessions. Reads only, never writes."""
    result = _ProbeResult(report=ProbeReport(probe_id=probe.id))
    report = result.report

    try:
        refs = probe.discover()
    except ExtractionError as err:
        logger.warning("Discovery failed for %s: %s", probe.id, err)
        report.errors.append(str(err))
        result.discovery_failed = True
        return result
    report.discovered = len(refs)

    for ref in refs:
        try:
            metadata = probe.extract_metadata(ref)
        except ExtractionError as err:
            logger.warning("Skipping session %s from %s: %s", ref.id, probe.id, err)
            report.skipped += 1
            report.errors.append(f"{ref.id}: {err}")
            continue
        except Exception as err:
            # A probe bug on one session must not stop the others
            logger.warning(
                "Unexpected error extracting %s from %s: %s", ref.id, probe.id, err, exc_info=True
            )
            report.skipped += 1
            report.errors.append(f"{ref.id}: {err}")
            continue
        report.skipped_records += metadata.skipped_records
        result.sessions.append((ref, metadata))
    return result


def _probe_results(probes: list[Probe], max_workers: int) -> Iterator[_ProbeResult]:
    if max_workers <= 1 or len(probes) <= 1:
        for probe in probes:
            yield _extract_probe(probe)
        return

    pool = ThreadPoolExecutor(max_workers=max_workers)
    try:
        # map keeps probe order, so writes happen in a stable order
        yield from pool.map(_extract_probe, probes)
    finally:
        # Also runs when the consumer stops early, e.g. on a StoreError
        pool.shutdown(wait=True, cancel_futures=True)


def _register_probe(store: MetadataStore, probe: Probe) -> None:
    provider_id = None
    if probe.source_type == "single":
        provider_id = probe.provider
        store.ensure_provider(provider_id, probe.provider, probe.description)
    store.ensure_probe_source(
        probe.id,
        provider_id,
        probe.source,
        source_type=probe.source_type,
        base_path=str(probe.base_path),
    )


def _save_result(store: MetadataStore, result: _ProbeResult) -> None:
    report = result.report
    for ref, metadata in result.sessions:
        try:
            store.save_session(report.probe_id, ref, metadata)
        except ValueError as err:
            # Metadata the schema can't hold; nothing was written for it
            logger.warning("Skipping session %s from %s: %s", ref.id, report.probe_id, err)
            report.skipped += 1
            report.errors.append(f"{ref.id}: {err}")
            continue
        report.extracted += 1
    if not result.discovery_failed:
        store.update_probe_indexed(report.probe_id)
    logger.info(
        "%s: %d discovered, %d extracted, %d skipped",
        report.probe_id,
        report.discovered,
        report.extracted,
        report.skipped,
    )


def run_extraction(
    store: MetadataStore,
    registry: ProbeRegistry,
    max_workers: int = 1,
    detect_duplicates: bool = False,
    min_confidence: float = 0.8,
) -> ExtractionReport:
    """Extract every available probe and persist the results.

    Sessions that fail to extract, or whose metadata the store rejects,
    are skipped and counted. A StoreError propagates and stops the run;
    sessions already saved stay saved.
    """
    report = ExtractionReport()
    probes = registry.available_probes()
    if not probes:
        logger.info("No probe sources available")
        return report

    for probe in probes:
        _register_probe(store, probe)

    with closing(_probe_results(probes, max_workers)) as results:
        for result in results:
            _save_result(store, result)
            report.probes.append(result.report)

    if detect_duplicates:
        report.duplicates_found = store.detect_duplicates(min_confidence)
        if report.duplicates_found:
            logger.info("Recorded %d new duplicate session pairs", report.duplicates_found)

    return report
