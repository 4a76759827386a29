"""Event sourcing: Origin Log, projections, attachment resolution, intake."""
