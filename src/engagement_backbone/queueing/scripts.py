"""
Queue Lua Scripts

Every state transition of a job runs as one server-side script so that the
dedupe check, the state hash and the state structures change atomically.

Key layout under ``<prefix>:<queue>:``:
    wait         list   LPUSH on admission, RPOP on claim
    prioritized  zset   score = priority * 2^32 + admission counter
    pc           string admission counter of prioritized jobs
    active       list   claimed jobs
    delayed      zset   score = ready-at (ms)
    completed    zset   score = finished-at (ms)
    failed       zset   score = finished-at (ms)
    id           string generated job ids
    <id>         hash   job record
    <id>:lock    string lock token, PX = lock duration
"""

STATE_KEYS = ("wait", "prioritized", "active", "delayed", "completed", "failed")

# KEYS: wait, prioritized, delayed, id, pc, completed, failed
# ARGV: base, job_id ('' = generate), name, data, opts, timestamp, delay_ms, priority
# Returns {job_id, created(0|1)}
ADD_JOB = """
local base = ARGV[1]
local jobId = ARGV[2]
if jobId == '' then
  jobId = tostring(redis.call('INCR', KEYS[4]))
end
local jobKey = base .. jobId

local state = redis.call('HGET', jobKey, 'state')
if state then
  if state ~= 'completed' and state ~= 'failed' then
    return {jobId, 0}
  end
  redis.call('ZREM', KEYS[6], jobId)
  redis.call('ZREM', KEYS[7], jobId)
  redis.call('DEL', jobKey, jobKey .. ':lock')
end

local timestamp = tonumber(ARGV[6])
local delay = tonumber(ARGV[7])
local priority = tonumber(ARGV[8])
local newState = 'waiting'
if delay > 0 then
  newState = 'delayed'
end

redis.call('HSET', jobKey,
  'name', ARGV[3], 'data', ARGV[4], 'opts', ARGV[5],
  'timestamp', timestamp, 'delay', delay, 'priority', priority,
  'attempts_made', 0, 'stalled_counter', 0, 'state', newState)

if delay > 0 then
  redis.call('ZADD', KEYS[3], timestamp + delay, jobId)
elseif priority > 0 then
  local counter = redis.call('INCR', KEYS[5])
  redis.call('ZADD', KEYS[2], priority * 4294967296 + (counter % 4294967296), jobId)
else
  redis.call('LPUSH', KEYS[1], jobId)
end
return {jobId, 1}
"""

# KEYS: wait, prioritized, active, delayed, pc
# ARGV: base, now_ms, lock_token, lock_duration_ms
# Returns nil when nothing is waiting, else {job_id, flat job hash}
CLAIM_JOB = """
local base = ARGV[1]
local now = tonumber(ARGV[2])

local due = redis.call('ZRANGEBYSCORE', KEYS[4], '-inf', now, 'LIMIT', 0, 1000)
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[4], id)
  local dueKey = base .. id
  if redis.call('EXISTS', dueKey) == 1 then
    local priority = tonumber(redis.call('HGET', dueKey, 'priority') or '0')
    redis.call('HSET', dueKey, 'state', 'waiting')
    if priority > 0 then
      local counter = redis.call('INCR', KEYS[5])
      redis.call('ZADD', KEYS[2], priority * 4294967296 + (counter % 4294967296), id)
    else
      redis.call('LPUSH', KEYS[1], id)
    end
  end
end

local jobId = redis.call('RPOP', KEYS[1])
if not jobId then
  local popped = redis.call('ZPOPMIN', KEYS[2])
  if popped[1] then
    jobId = popped[1]
  end
end
if not jobId then
  return nil
end

local jobKey = base .. jobId
if redis.call('EXISTS', jobKey) == 0 then
  return {jobId, {}}
end
redis.call('LPUSH', KEYS[3], jobId)
redis.call('SET', jobKey .. ':lock', ARGV[3], 'PX', ARGV[4])
redis.call('HSET', jobKey, 'state', 'active', 'processed_on', now)
return {jobId, redis.call('HGETALL', jobKey)}
"""

# KEYS: lock
# ARGV: token, duration_ms
EXTEND_LOCK = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  redis.call('PEXPIRE', KEYS[1], ARGV[2])
  return 1
end
return 0
"""

# KEYS: active, target (completed|failed), job, lock
# ARGV: job_id, token, now_ms, state, failed_reason
# Returns 0 ok, -1 missing job, -2 lock not owned
MOVE_TO_FINISHED = """
if redis.call('EXISTS', KEYS[3]) == 0 then
  return -1
end
if redis.call('GET', KEYS[4]) ~= ARGV[2] then
  return -2
end
redis.call('LREM', KEYS[1], 0, ARGV[1])
redis.call('DEL', KEYS[4])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
redis.call('HINCRBY', KEYS[3], 'attempts_made', 1)
redis.call('HSET', KEYS[3], 'state', ARGV[4], 'finished_on', ARGV[3])
if ARGV[5] ~= '' then
  redis.call('HSET', KEYS[3], 'failed_reason', ARGV[5])
end
return 0
"""

# KEYS: active, wait, delayed, job, lock, prioritized, pc
# ARGV: job_id, token, now_ms, delay_ms, failed_reason
# Returns 0 ok, -1 missing job, -2 lock not owned
RETRY_JOB = """
if redis.call('EXISTS', KEYS[4]) == 0 then
  return -1
end
if redis.call('GET', KEYS[5]) ~= ARGV[2] then
  return -2
end
redis.call('LREM', KEYS[1], 0, ARGV[1])
redis.call('DEL', KEYS[5])
redis.call('HINCRBY', KEYS[4], 'attempts_made', 1)
redis.call('HSET', KEYS[4], 'failed_reason', ARGV[5])

local delay = tonumber(ARGV[4])
if delay > 0 then
  redis.call('HSET', KEYS[4], 'state', 'delayed')
  redis.call('ZADD', KEYS[3], tonumber(ARGV[3]) + delay, ARGV[1])
else
  redis.call('HSET', KEYS[4], 'state', 'waiting')
  local priority = tonumber(redis.call('HGET', KEYS[4], 'priority') or '0')
  if priority > 0 then
    local counter = redis.call('INCR', KEYS[7])
    redis.call('ZADD', KEYS[6], priority * 4294967296 + (counter % 4294967296), ARGV[1])
  else
    redis.call('LPUSH', KEYS[2], ARGV[1])
  end
end
return 0
"""

# KEYS: active, wait, failed
# ARGV: base, now_ms, max_stalled
# Returns {requeued ids, failed ids}
MOVE_STALLED = """
local requeued = {}
local failed = {}
local ids = redis.call('LRANGE', KEYS[1], 0, -1)
for _, id in ipairs(ids) do
  local jobKey = ARGV[1] .. id
  if redis.call('EXISTS', jobKey .. ':lock') == 0 then
    redis.call('LREM', KEYS[1], 0, id)
    if redis.call('EXISTS', jobKey) == 1 then
      local count = redis.call('HINCRBY', jobKey, 'stalled_counter', 1)
      if count > tonumber(ARGV[3]) then
        redis.call('ZADD', KEYS[3], ARGV[2], id)
        redis.call('HSET', jobKey, 'state', 'failed', 'finished_on', ARGV[2],
          'failed_reason', 'job stalled more than allowable limit')
        table.insert(failed, id)
      else
        redis.call('HSET', jobKey, 'state', 'waiting')
        redis.call('RPUSH', KEYS[2], id)
        table.insert(requeued, id)
      end
    end
  end
end
return {requeued, failed}
"""

# KEYS: state zset (completed|failed)
# ARGV: base, max_timestamp_ms, limit
CLEAN_JOBS = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[2], 'LIMIT', 0, tonumber(ARGV[3]))
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('DEL', ARGV[1] .. id, ARGV[1] .. id .. ':lock')
end
return #ids
"""

# KEYS: state zset (completed|failed)
# ARGV: base, min_timestamp_ms, max_count
APPLY_RETENTION = """
local removed = 0
local old = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[2], 'LIMIT', 0, 1000)
for _, id in ipairs(old) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('DEL', ARGV[1] .. id)
  removed = removed + 1
end

local excess = redis.call('ZCARD', KEYS[1]) - tonumber(ARGV[3])
if excess > 0 then
  local ids = redis.call('ZRANGE', KEYS[1], 0, math.min(excess, 1000) - 1)
  for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('DEL', ARGV[1] .. id)
    removed = removed + 1
  end
end
return removed
"""
