"""Invoice assembly, coupons and settlement."""
