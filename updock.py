#!/usr/bin/env python3
"""
Docker Base Image Update Checker

Checks whether the image tags pinned in a configuration have newer tags in
their registry, and tells compatible updates apart from breaking ones using
a tag pattern per image, e.g. '<!>.<>.<>' for semantic versions where only
a new major version is breaking.
"""

__version__ = "1.0.0"

import argparse
import enum
import json
import logging
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import jsonschema

from registry_api import (
    DEFAULT_NAMESPACE, DEFAULT_REGISTRY, REQUEST_TIMEOUT,
    CheckCancelled, RegistryClient, RegistryError, RetryPolicy, normalize_registry,
)
from tag_pattern import Pattern, PatternSyntaxError, compile_pattern
from versioning import Classification, ExtractedVersion, Update, select_updates

logger = logging.getLogger("updock")

LOGGER_NAMES = ("updock", "registry_api", "tag_pattern", "versioning")

DEFAULT_CONFIG_FILE = "updock.json"
DEFAULT_SETTINGS = {
    "max_workers": 4,
    "timeout": REQUEST_TIMEOUT,
    "max_attempts": 4,
    "backoff_base": 1.0,
    "max_backoff": 30.0,
    "max_retry_after": 60.0,
}
EXIT_INTERRUPTED = 130
CANCEL_GRACE = 5.0  # seconds running checks get to stop after an interrupt

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "images": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "image": {"type": "string", "minLength": 1},
                    "tag": {"type": "string", "minLength": 1},
                    "pattern": {"type": "string"},
                    "registry": {"type": "string", "minLength": 1},
                    "source": {"type": "string"},
                    "line": {"type": "integer", "minimum": 1}
                },
                "required": ["image", "pattern"],
                "additionalProperties": False
            }
        },
        "settings": {
            "type": "object",
            "properties": {
                "max_workers": {"type": "integer", "minimum": 1},
                "timeout": {"type": "number", "exclusiveMinimum": 0},
                "max_attempts": {"type": "integer", "minimum": 1},
                "backoff_base": {"type": "number", "minimum": 0},
                "max_backoff": {"type": "number", "minimum": 0},
                "max_retry_after": {"type": "number", "minimum": 0}
            },
            "additionalProperties": False
        }
    },
    "required": ["images"]
}


class ConfigError(ValueError):
    """The configuration is well-formed JSON but cannot be used."""


class SelfMatchError(ValueError):
    """The tag in use does not follow its own pattern."""

    def __init__(self, tag: str, pattern: Pattern):
        self.tag = tag
        self.pattern = pattern
        super().__init__(f"The current tag '{tag}' does not match its pattern '{pattern.source}'")


def parse_image_reference(image: str,
                          registry: Optional[str] = None) -> Tuple[str, str, str, Optional[str]]:
    """
    Parse an image reference into registry, namespace, repository and tag.

    The first path component is only a registry when more components follow
    it, so 'rocket.chat' is the official rocket.chat image, not a host.
    Only Docker Hub puts bare names under the 'library' namespace; on
    other registries a bare name has an empty namespace.

    Args:
        image: Image reference (e.g. 'ubuntu:20.04', 'linuxserver/calibre',
               'ghcr.io/project/image:v1', 'localhost:5000/ns/repo')
        registry: Registry host that replaces the one in ``image``

    Returns:
        Tuple of (registry, namespace, repository, tag); tag is None when
        the reference carries none
    """
    if image.startswith(('http://', 'https://')):
        image = image.split('://', 1)[1]

    if '@' in image:
        raise ConfigError(f"'{image}' is pinned by digest; there is no tag to compare")

    # Only a colon after the last slash separates a tag; earlier ones are ports
    tag = None
    last_slash = image.rfind('/')
    last_colon = image.rfind(':')
    if last_colon > last_slash:
        image, tag = image[:last_colon], image[last_colon + 1:]
        if not tag:
            raise ConfigError(f"'{image}:' has an empty tag")

    parts = image.split('/')
    if not all(parts):
        raise ConfigError(f"'{image}' is not a valid image reference")

    first = parts[0]
    if len(parts) > 1 and ('.' in first or ':' in first or first == 'localhost'):
        host = first
        parts = parts[1:]
    else:
        host = DEFAULT_REGISTRY
    registry = normalize_registry(registry or host)

    if len(parts) == 1:
        namespace = DEFAULT_NAMESPACE if registry == DEFAULT_REGISTRY else ''
    else:
        namespace = '/'.join(parts[:-1])
    return registry, namespace, parts[-1], tag


@dataclass(frozen=True)
class ImageReference:
    """One pinned image together with its pattern and where it was declared."""
    registry: Optional[str]
    namespace: Optional[str]
    repository: str
    tag: str
    pattern: str
    source: str = ""
    line: int = 0

    @property
    def name(self) -> str:
        """Image name the way it would be written in a Dockerfile."""
        parts = []
        if normalize_registry(self.registry) != DEFAULT_REGISTRY:
            parts.append(self.registry)
        hub = normalize_registry(self.registry) == DEFAULT_REGISTRY
        if self.namespace and not (hub and self.namespace == DEFAULT_NAMESPACE):
            parts.append(self.namespace)
        parts.append(self.repository)
        return '/'.join(parts)

    @property
    def location(self) -> str:
        return f"{self.source}:{self.line}" if self.source else ""

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


@dataclass
class Report:
    """Outcome of checking one image."""
    reference: ImageReference
    current: Optional[ExtractedVersion] = None
    compatible: Optional[Update] = None
    breaking: Optional[Update] = None
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def has_update(self) -> bool:
        return self.compatible is not None or self.breaking is not None

    @property
    def updates(self) -> List[Update]:
        return [u for u in (self.compatible, self.breaking) if u is not None]


class UpdateLevel(enum.IntEnum):
    """Overall result of a run; the values are the process exit codes."""
    NO_UPDATES = 0
    COMPATIBLE_UPDATE = 1
    BREAKING_UPDATE = 2
    FAILURE = 3


def update_level(reports: List[Report]) -> UpdateLevel:
    """Summarize a run. A failed check outranks any update found."""
    if any(report.failed for report in reports):
        return UpdateLevel.FAILURE
    if any(report.breaking for report in reports):
        return UpdateLevel.BREAKING_UPDATE
    if any(report.compatible for report in reports):
        return UpdateLevel.COMPATIBLE_UPDATE
    return UpdateLevel.NO_UPDATES


class UpdateChecker:
    def __init__(self, client: Optional[RegistryClient] = None, max_workers: int = 4,
                 cancel_grace: float = CANCEL_GRACE):
        """
        Initialize the checker.

        Args:
            client: Registry client shared by all checks of the run
            max_workers: Number of images checked at the same time
            cancel_grace: Seconds running checks get to stop after an interrupt
        """
        self.client = client or RegistryClient()
        self.max_workers = max_workers
        self.cancel_grace = cancel_grace
        self.logger = logger
        self.interrupted = False

        self.compiled_patterns: Dict[str, Pattern] = {}  # Cache for compiled patterns
        self._patterns_lock = threading.Lock()

    def cancel(self) -> None:
        """Cancel the run; checks not finished yet are reported as cancelled."""
        self.interrupted = True
        self.client.cancel()

    def _get_pattern(self, source: str) -> Pattern:
        with self._patterns_lock:
            pattern = self.compiled_patterns.get(source)
            if pattern is None:
                pattern = compile_pattern(source)
                self.compiled_patterns[source] = pattern
            return pattern

    def current_version(self, reference: ImageReference) -> ExtractedVersion:
        """
        Compile the reference's pattern and read the version of its tag.

        Raises:
            PatternSyntaxError: the pattern is malformed
            SelfMatchError: the tag in use does not follow the pattern
        """
        pattern = self._get_pattern(reference.pattern)
        current = ExtractedVersion.extract(pattern, reference.tag)
        if current is None:
            raise SelfMatchError(reference.tag, pattern)
        return current

    def _find_updates(self, reference: ImageReference, current: ExtractedVersion) -> Report:
        report = Report(reference, current=current)
        try:
            updates = select_updates(current, self.client.fetch_tags(reference))
        except RegistryError as e:
            self.logger.warning(f"Could not check {reference}: {e}")
            report.error = e
            return report

        for update in updates:
            if update.classification is Classification.BREAKING:
                report.breaking = update
            else:
                report.compatible = update
        return report

    def _prepare(self, reference: ImageReference) -> Union[ExtractedVersion, Report]:
        """Return the current version, or a failed report when there is none."""
        try:
            return self.current_version(reference)
        except (PatternSyntaxError, SelfMatchError) as e:
            self.logger.warning(f"Skipping {reference}: {e}")
            return Report(reference, error=e)

    def check_image(self, reference: ImageReference) -> Report:
        """Check a single image, turning any expected failure into a report."""
        current = self._prepare(reference)
        if isinstance(current, Report):
            return current
        return self._find_updates(reference, current)

    def check(self, references: List[ImageReference]) -> List[Report]:
        """
        Check all images concurrently.

        Reports come back in the order of ``references`` however the checks
        finish.  One image failing never affects the others.  On interrupt,
        running checks get ``cancel_grace`` seconds to stop, finished reports
        are kept and the rest are marked as cancelled.
        """
        reports: List[Optional[Report]] = [None] * len(references)
        futures = {}
        executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                      thread_name_prefix="updock")
        try:
            for index, reference in enumerate(references):
                current = self._prepare(reference)
                if isinstance(current, Report):
                    reports[index] = current
                    continue
                self.logger.info(f"Checking {reference}...")
                futures[executor.submit(self._find_updates, reference, current)] = index

            for future in as_completed(futures):
                index = futures[future]
                try:
                    reports[index] = future.result()
                except Exception as e:
                    self.logger.error(f"Unexpected error checking {references[index]}: {e}")
                    reports[index] = Report(references[index], error=e)
        except KeyboardInterrupt:
            self.logger.warning("Interrupted, keeping results of finished checks")
            self.cancel()
            executor.shutdown(wait=False, cancel_futures=True)
            # Running checks must leave the HTTP session before it is closed
            _, running = wait(futures, timeout=self.cancel_grace)
            if running:
                self.logger.warning(f"{len(running)} check(s) still running after "
                                    f"{self.cancel_grace:.0f}s")
            for future, index in futures.items():
                if reports[index] is None and future.done() and not future.cancelled():
                    if future.exception() is None:
                        reports[index] = future.result()
        finally:
            executor.shutdown(wait=not self.interrupted, cancel_futures=True)

        for index, reference in enumerate(references):
            if reports[index] is None:
                reports[index] = Report(reference,
                                        error=CheckCancelled("Check cancelled before completion"))
        return reports


def load_config(config_file: Path) -> Dict[str, Any]:
    """Load and validate configuration from JSON file."""
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
        jsonschema.validate(config, CONFIG_SCHEMA)
        return config
    except FileNotFoundError:
        logger.error(f"Config file {config_file} not found")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing config file: {e}")
        raise
    except jsonschema.ValidationError as e:
        logger.error(f"Configuration validation failed: {e.message}")
        raise


def references_from_config(config: Dict[str, Any], config_file: str = "") -> List[ImageReference]:
    """Build image references from a validated configuration, in config order."""
    references = []
    for number, entry in enumerate(config.get('images', []), 1):
        registry, namespace, repository, tag = parse_image_reference(
            entry['image'], registry=entry.get('registry'))
        tag = entry.get('tag') or tag
        if not tag:
            raise ConfigError(f"Image #{number} '{entry['image']}' has no tag to check")

        references.append(ImageReference(
            registry=registry,
            namespace=namespace,
            repository=repository,
            tag=tag,
            pattern=entry['pattern'],
            source=entry.get('source', str(config_file)),
            line=entry.get('line', number),
        ))
    return references


def settings_from_config(config: Dict[str, Any]) -> Dict[str, Any]:
    settings = dict(DEFAULT_SETTINGS)
    settings.update(config.get('settings') or {})
    return settings


def setup_logging(level: str) -> logging.Logger:
    """Setup logging configuration."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S %Z'
    ))
    for name in LOGGER_NAMES:
        log = logging.getLogger(name)
        log.setLevel(getattr(logging, level.upper()))
        log.propagate = False
        if not log.handlers:
            log.addHandler(handler)
    return logger


def format_report(report: Report) -> str:
    """One line per image for the terminal."""
    reference = report.reference
    prefix = f"{reference.location} {reference}" if reference.location else str(reference)
    if report.failed:
        return f"{prefix}: FAILED: {report.error}"
    if not report.has_update:
        return f"{prefix}: ok"
    arrows = []
    if report.breaking:
        arrows.append(f"-!> {reference.name}:{report.breaking.tag}")
    if report.compatible:
        arrows.append(f"-> {reference.name}:{report.compatible.tag}")
    return f"{prefix} " + " ".join(arrows)


def main():
    parser = argparse.ArgumentParser(
        description='Check pinned Docker image tags for compatible and breaking updates'
    )
    parser.add_argument(
        'config',
        nargs='?',
        default=os.environ.get('CONFIG_FILE', DEFAULT_CONFIG_FILE),
        help=f'Path to configuration JSON file (env: CONFIG_FILE, default: {DEFAULT_CONFIG_FILE})'
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        default=int(os.environ['MAX_WORKERS']) if os.environ.get('MAX_WORKERS') else None,
        help='Number of images checked in parallel (env: MAX_WORKERS, default: from config or 4)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args()
    log = setup_logging(args.log_level)

    try:
        config = load_config(Path(args.config))
        references = references_from_config(config, args.config)
    except (OSError, ValueError, jsonschema.ValidationError) as e:
        # json.JSONDecodeError and ConfigError are ValueErrors
        log.error(f"Fatal error: {e}")
        sys.exit(int(UpdateLevel.FAILURE))

    settings = settings_from_config(config)
    retry = RetryPolicy(
        max_attempts=settings['max_attempts'],
        backoff_base=settings['backoff_base'],
        max_backoff=settings['max_backoff'],
        max_retry_after=settings['max_retry_after'],
    )
    with RegistryClient(timeout=settings['timeout'], retry=retry) as client:
        checker = UpdateChecker(client, max_workers=args.max_workers or settings['max_workers'])
        reports = checker.check(references)

    for report in reports:
        print(format_report(report))

    level = update_level(reports)
    failures = sum(1 for r in reports if r.failed)
    breaking = sum(1 for r in reports if r.breaking)
    compatible = sum(1 for r in reports if r.compatible)
    log.info(
        f"Checked {len(reports)} image(s): {breaking} with breaking update, "
        f"{compatible} with compatible update, {failures} failed"
    )

    if checker.interrupted:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(int(level))


if __name__ == '__main__':
    main()
