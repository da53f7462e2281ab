"""Background renewal, trial conversion, payment retry and cleanup passes."""
