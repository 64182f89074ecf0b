"""Master side: worker pool and result storage."""
