"""Cache configuration and TTL settings"""

# Cache TTL (Time To Live) configurations in seconds
CACHE_TTL = {
    # Finalized attempts never change again
    "attempt_results": 3600,  # 1 hour
    "my_results": 300,        # 5 minutes
}

# Cache key patterns
CACHE_KEYS = {
    "attempt_results": "attempt:results:{}",
    "my_results": "attempt:my-results:{}:page:{}:size:{}",
}

# Prefixes cleared when an attempt is finalized
CACHE_PREFIXES = {
    "my_results": "attempt:my-results:{}:",
}
