"""Pure domain layer: value objects, lifecycles, pricing and truncation rules."""
