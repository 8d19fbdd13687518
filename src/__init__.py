"""Growth experimentation engine source tree."""
