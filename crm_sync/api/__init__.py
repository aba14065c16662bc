"""Google API access and credential loading."""
