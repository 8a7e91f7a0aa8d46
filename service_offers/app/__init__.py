"""
Offers Service package for the optical offers platform.

This package prices an optical retail cart and applies the best offers an
organization has configured. It provides:

- app.main: API surface for calculation, simulation, combo checks, coupon
  commits and admin configuration writes.
- app.rules: Rule and catalog records, validation, repository and the
  snapshot provider.
- app.pricing: Catalog lookup, primary offer strategies, discount layers,
  upsell and upgrade advice, and the engine that orders them.
- app.cache: In-process and Redis caches of rule snapshots.
- app.persistence: PostgreSQL storage for rules and coupon usage.

Guidelines:
- A calculation reads one snapshot and writes nothing.
- Coupon usage changes only through the commit endpoint.
- Keep pricing deterministic and observable (metrics + logs).
"""
