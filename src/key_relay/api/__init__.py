"""HTTP surface of the key relay."""
