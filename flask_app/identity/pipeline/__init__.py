"""Identity resolution pipeline: normalize, match, compute, apply, reverse."""
