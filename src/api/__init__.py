"""HTTP surface for the experimentation engine."""
