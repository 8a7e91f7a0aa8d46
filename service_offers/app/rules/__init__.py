"""
Rules package.

Defines the records admins configure (brands, lens SKUs, power bands,
offer rules, category discounts, coupons, combo tiers, store activations)
and the repository that stores them per organization.

Modules of interest:
- models: Pydantic records and the immutable RuleSnapshot.
- validation: Write-time checks (band overlap, duplicate keys).
- repository: Storage contract, in-memory backend and YAML seeding.
- provider: Snapshot lookup through the cache layers.
"""
