"""Payment Times Reporting import, staging and metrics pipeline."""
