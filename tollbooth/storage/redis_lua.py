"""Redis Lua scripts for rate limit counters.

These scripts provide atomic operations so that concurrent limiter
instances sharing one Redis never leave a counter without an expiry.
"""

# Atomic increment-and-expire for the fixed window algorithm.
# INCR and PEXPIRE run in one server-side step: a client crashing between two
# separate round trips would otherwise leave a counter that never expires.
# The expiry is only set for a new key (count == 1) or a key that lost its
# TTL (PTTL < 0), so later hits never extend the window.
#
# KEYS[1]: counter key
# ARGV[1]: window length in milliseconds
# Returns: {count, ttl_ms}
FIXED_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local window = tonumber(ARGV[1])

    local count = redis.call('INCR', key)
    local ttl = redis.call('PTTL', key)

    if count == 1 or ttl < 0 then
        redis.call('PEXPIRE', key, window)
        ttl = window
    end

    return {count, ttl}
"""
