"""Grower payment batch lifecycle, posting and voiding engine."""
