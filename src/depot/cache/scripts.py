"""Server-side Lua scripts executed atomically through ``CacheStore.eval``."""

from __future__ import annotations

# Delete KEYS[1] only if it still holds ARGV[1]. Returns 1 if deleted, else 0.
RELEASE_LOCK = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Read the members of tag set KEYS[1], delete them, then delete the set.
# Returns the number of member keys that actually existed.
INVALIDATE_TAG = """
local members = redis.call("smembers", KEYS[1])
local deleted = 0
for i = 1, #members, 500 do
    deleted = deleted + redis.call("del", unpack(members, i, math.min(i + 499, #members)))
end
redis.call("del", KEYS[1])
return deleted
"""
