"""Browser-driven TaskChute Cloud CSV export pipeline."""
