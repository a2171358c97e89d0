from __future__ import annotations

import argparse
import dataclasses
import json
import threading
from pathlib import Path
from typing import Any, Sequence

from dotenv import load_dotenv

from .config import LocatorConfigError, load_locator_config_from_env
from .errors import KeyRejected, LocatorError
from .lifecycle import AttemptStatus, RequestOutcome
from .observability import configure_logging
from .provider import build_online_locator
from .snapshot import parse_observations

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SUPPRESSED = 2


def _load_observations(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise SystemExit(f"can't read observations file {path}: {exc}") from exc
    except ValueError as exc:
        raise SystemExit(f"observations file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SystemExit("observations file must contain a JSON object")
    return data


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Resolve a position from observed cells and wifi networks")
    parser.add_argument("--observations", required=True, help="JSON file with cells, wifi and carrier")
    parser.add_argument("--api-url", default=None, help="Override GEOLOCATOR_API_URL")
    parser.add_argument("--key-path", default=None, help="Override GEOLOCATOR_KEY_PATH")
    args = parser.parse_args(argv)

    try:
        config = load_locator_config_from_env()
    except LocatorConfigError as exc:
        raise SystemExit(f"invalid locator config: {exc}") from exc

    overrides: dict[str, Any] = {}
    if args.api_url:
        overrides["api_url"] = args.api_url
    if args.key_path:
        overrides["key_path"] = Path(args.key_path)
    if overrides:
        config = dataclasses.replace(config, **overrides)

    configure_logging(level=config.log_level, log_format=config.log_format)

    try:
        cells, wifi, carrier = parse_observations(_load_observations(Path(args.observations)))
    except ValueError as exc:
        raise SystemExit(f"invalid observations: {exc}") from exc

    locator = build_online_locator(config)
    locator.update_cells(cells)
    locator.update_wifi(wifi)
    locator.update_carrier(carrier)

    done = threading.Event()
    outcomes: list[RequestOutcome] = []

    def _record(outcome: RequestOutcome) -> None:
        outcomes.append(outcome)
        done.set()

    locator.on_outcome(_record)

    result = locator.find_location()
    if not result.decision.issue and not locator.scheduler.waiting_for_wifi:
        # The first cell-only trigger only waits for wifi; a one-shot run has
        # nothing more to wait for.
        result = locator.find_location()

    if not result.sent:
        status = result.status.value if result.status is not None else "not_scheduled"
        print(json.dumps({"status": status}))
        if result.status in {AttemptStatus.CONFIGURATION_ERROR, AttemptStatus.TRANSPORT_ERROR}:
            return EXIT_ERROR
        return EXIT_SUPPRESSED

    if not done.wait(timeout=config.request_timeout_s + 5.0):
        print(json.dumps({"status": "no_outcome"}))
        return EXIT_ERROR

    outcome = outcomes[0]
    try:
        location = outcome.raise_for_error()
    except LocatorError as exc:
        out: dict[str, Any] = {
            "status": outcome.kind.value,
            "error": type(exc).__name__,
            "detail": str(exc),
            "key_rejected": isinstance(exc, KeyRejected),
        }
        print(json.dumps(out))
        return EXIT_ERROR

    print(
        json.dumps(
            {
                "status": outcome.kind.value,
                "latitude": location.latitude,
                "longitude": location.longitude,
                "accuracy": location.accuracy,
            }
        )
    )
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
