"""Stage pipeline engine, progress events and the explorer pipelines built on them."""
