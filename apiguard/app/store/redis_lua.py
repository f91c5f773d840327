"""Redis Lua scripts for the distributed record store.

Each operation runs as a single script so the check and the mutation happen
in one atomic step, with no read-then-write race between instances. Time is
always passed in by the caller (ARGV ``now``, epoch ms) so every instance
evaluates against the same injected clock.

Fractional state is written with ``%.17g`` so it survives the round-trip
through Redis strings without losing precision, and returned as a string
because Redis truncates Lua numbers to integers in replies.
"""

# Sliding window over a sorted set of accepted request timestamps.
# KEYS[1]: key
# ARGV: now, window_ms, permits, consume (1/0), unique member
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local permits = tonumber(ARGV[3])
    local consume = ARGV[4] == '1'
    local member = ARGV[5]

    local kind = redis.call('TYPE', key)['ok']
    if kind ~= 'none' and kind ~= 'zset' then
        redis.call('DEL', key)
    end

    -- Drop timestamps older than now - window
    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. string.format('%.17g', now - window_ms))
    local count = redis.call('ZCARD', key)

    local allowed = count < permits
    if allowed and consume then
        redis.call('ZADD', key, now, member)
        redis.call('PEXPIRE', key, window_ms)
        count = count + 1
    end
    return {allowed and 1 or 0, tostring(count), 0}
"""

# Fixed window counter: hash {w = window index, c = accepted count}.
# KEYS[1]: key
# ARGV: now, window_ms, permits, consume (1/0)
FIXED_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local permits = tonumber(ARGV[3])
    local consume = ARGV[4] == '1'

    local kind = redis.call('TYPE', key)['ok']
    if kind ~= 'none' and kind ~= 'hash' then
        redis.call('DEL', key)
    end

    local index = math.floor(now / window_ms)
    local stored = redis.call('HMGET', key, 'w', 'c')
    local count = 0
    if stored[1] and tonumber(stored[1]) == index then
        count = tonumber(stored[2]) or 0
    end

    local allowed = count + 1 <= permits
    if allowed and consume then
        count = count + 1
        redis.call('HSET', key, 'w', string.format('%d', index), 'c', count)
        redis.call('PEXPIRE', key, window_ms)
    end
    return {allowed and 1 or 0, tostring(count), index}
"""

# Token bucket: hash {t = tokens, ts = last refill}.
# KEYS[1]: key
# ARGV: now, capacity, refill rate (tokens/s), consume (1/0), ttl_ms
TOKEN_BUCKET_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local capacity = tonumber(ARGV[2])
    local rate = tonumber(ARGV[3])
    local consume = ARGV[4] == '1'
    local ttl_ms = tonumber(ARGV[5])

    local kind = redis.call('TYPE', key)['ok']
    if kind ~= 'none' and kind ~= 'hash' then
        redis.call('DEL', key)
    end

    local tokens = capacity
    local stored = redis.call('HMGET', key, 't', 'ts')
    if stored[1] then
        local elapsed = math.max(0, now - tonumber(stored[2]))
        tokens = math.min(capacity, tonumber(stored[1]) + elapsed * rate / 1000)
    end

    local allowed = tokens >= 1
    if allowed and consume then
        tokens = math.max(0, tokens - 1)
        redis.call('HSET', key, 't', string.format('%.17g', tokens), 'ts', string.format('%d', now))
        redis.call('PEXPIRE', key, ttl_ms)
    end
    return {allowed and 1 or 0, string.format('%.17g', tokens), 0}
"""

# Leaky bucket: hash {wl = water level, ts = last drain}.
# KEYS[1]: key
# ARGV: now, permits, drain rate (requests/s), consume (1/0), ttl_ms
LEAKY_BUCKET_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local permits = tonumber(ARGV[2])
    local rate = tonumber(ARGV[3])
    local consume = ARGV[4] == '1'
    local ttl_ms = tonumber(ARGV[5])

    local kind = redis.call('TYPE', key)['ok']
    if kind ~= 'none' and kind ~= 'hash' then
        redis.call('DEL', key)
    end

    local water = 0
    local stored = redis.call('HMGET', key, 'wl', 'ts')
    if stored[1] then
        local elapsed = math.max(0, now - tonumber(stored[2]))
        water = math.max(0, tonumber(stored[1]) - elapsed * rate / 1000)
    end

    local allowed = water < permits
    if allowed and consume then
        water = water + 1
        redis.call('HSET', key, 'wl', string.format('%.17g', water), 'ts', string.format('%d', now))
        redis.call('PEXPIRE', key, ttl_ms)
    end
    return {allowed and 1 or 0, string.format('%.17g', water), 0}
"""

# Create a JSON record unless a live one exists.
# KEYS[1]: key
# ARGV: record json, ttl_ms, now
# Returns nil when created, otherwise the existing record json.
CREATE_IF_ABSENT_SCRIPT = """
    local key = KEYS[1]
    local record = ARGV[1]
    local ttl_ms = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])

    local kind = redis.call('TYPE', key)['ok']
    if kind ~= 'none' and kind ~= 'string' then
        redis.call('DEL', key)
    elseif kind == 'string' then
        local existing = redis.call('GET', key)
        local ok, decoded = pcall(cjson.decode, existing)
        if not ok or type(decoded) ~= 'table' then
            -- Malformed record: hand it back so the caller reports it
            return existing
        end
        local expire_time = tonumber(decoded['expire_time'])
        if expire_time == nil or expire_time > now then
            return existing
        end
    end

    redis.call('SET', key, record, 'PX', ttl_ms)
    return false
"""

# Conditionally update a JSON record.
# KEYS[1]: key
# ARGV: now, expected json, changes json, remove json, increments json, ttl_ms (0 keeps TTL)
# Returns {1, record} on update, {0, record} on mismatch, {0} when absent.
COMPARE_AND_UPDATE_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local expected = cjson.decode(ARGV[2])
    local changes = cjson.decode(ARGV[3])
    local remove = cjson.decode(ARGV[4])
    local increments = cjson.decode(ARGV[5])
    local ttl_ms = tonumber(ARGV[6])

    local kind = redis.call('TYPE', key)['ok']
    if kind ~= 'string' then
        return {0}
    end

    local existing = redis.call('GET', key)
    local ok, record = pcall(cjson.decode, existing)
    if not ok or type(record) ~= 'table' then
        return {0, existing}
    end
    local expire_time = tonumber(record['expire_time'])
    if expire_time ~= nil and expire_time <= now then
        return {0}
    end

    for field, value in pairs(expected) do
        if record[field] ~= value then
            return {0, existing}
        end
    end

    for field, value in pairs(changes) do
        record[field] = value
    end
    for _, field in ipairs(remove) do
        record[field] = nil
    end
    for field, delta in pairs(increments) do
        record[field] = (tonumber(record[field]) or 0) + delta
    end

    local encoded = cjson.encode(record)
    if ttl_ms > 0 then
        redis.call('SET', key, encoded, 'PX', ttl_ms)
    else
        redis.call('SET', key, encoded, 'KEEPTTL')
    end
    return {1, encoded}
"""
