#!/usr/bin/env python3
"""
Run the offer simulator against a YAML rule set.

Loads the rules into an in-memory repository, prices one cart and prints
the simulation (final result plus why every candidate rule won or lost).
Useful for checking a rule file before it is seeded into a real store.
"""

import argparse
import asyncio
import json
from pathlib import Path
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from shared.errors import OffersPlatformException  # noqa: E402

from service_offers.app.pricing.catalog import BandCoverage, BandPowerBasis  # noqa: E402
from service_offers.app.pricing.engine import OfferEngine  # noqa: E402
from service_offers.app.pricing.models import OfferCalculationInput  # noqa: E402
from service_offers.app.rules.repository import InMemoryRuleRepository  # noqa: E402

DEFAULT_RULES = Path(__file__).resolve().parent.parent / "service_offers" / "fixtures" / "demo_rules.yaml"


async def simulate(*, rules_path: Path, request: OfferCalculationInput,
                   power_basis: str, band_coverage: str) -> dict:
    """Seed the rules and simulate one cart."""
    repository = InMemoryRuleRepository()
    await repository.load_seed(str(rules_path))
    snapshot = await repository.load_snapshot(request.organization_id)

    engine = OfferEngine(power_basis=BandPowerBasis(power_basis), band_coverage=BandCoverage(band_coverage))
    return engine.simulate(request, snapshot).model_dump(mode="json", by_alias=True)


def _load_request(source: str) -> OfferCalculationInput:
    raw = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    return OfferCalculationInput.model_validate_json(raw)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulate offer selection for one cart.")
    parser.add_argument("request", help="Path to a calculation request JSON file, or - for stdin")
    parser.add_argument("--rules", type=Path, default=Path(os.getenv("OFFERS_RULES_SEED_FILE", DEFAULT_RULES)),
                        help="YAML rule set to load")
    parser.add_argument("--power-basis", choices=[basis.value for basis in BandPowerBasis],
                        default=BandPowerBasis.SIGNED_SPHERE.value, help="Power used to select a band")
    parser.add_argument("--band-coverage", choices=[coverage.value for coverage in BandCoverage],
                        default=BandCoverage.OPTIONAL.value, help="Reject powers outside every band")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write the JSON result")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    try:
        request = _load_request(args.request)
        result = asyncio.run(
            simulate(
                rules_path=args.rules,
                request=request,
                power_basis=args.power_basis,
                band_coverage=args.band_coverage,
            )
        )
    except KeyboardInterrupt:
        return 130
    except OffersPlatformException as exc:
        print(f"[simulate] {exc.code}: {exc.message}", file=sys.stderr)
        return 2
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[simulate] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False))

    if args.output:
        args.output.write_text(json.dumps(result, indent=2, ensure_ascii=False), encoding="utf-8")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
