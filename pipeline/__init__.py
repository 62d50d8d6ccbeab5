"""Per-tenant channel directive pipeline runtime package."""
