"""Remote mirroring and local/backing-store divergence detection."""
