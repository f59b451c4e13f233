# logmonitor

Building blocks for a service that watches log files on remote servers. It
finds the logs, collects new entries and checks that collected logs have not
been changed.

The package contains:

- **Configuration** (`logmonitor.config`). Loads YAML configuration files into
  dataclasses.
  - `${VAR}` and `${VAR:-default}` placeholders are expanded from the
    environment. Each variable is reported in `Config.env_checks` as
    `provided`, `defaulted` or `missing`.
  - Defaults are filled in according to the startup mode (`AppMode.HTTP` or
    `AppMode.CLI`).
  - The result is validated.
- **Locks** (`logmonitor.locks`). `LockManager.try_lock(key)` is a
  non-blocking, in-process lock. It returns a release function, or `None` when
  the key is already held.
- **Scheduler** (`logmonitor.scheduler`). `Scheduler` runs jobs at a fixed
  interval, each job in its own thread. `parse_interval` understands a limited
  set of cron-like expressions and `@every <duration>`. `parse_duration` reads
  durations such as `1h30m`, `1.5s` or `300ms`.
- **Job queue** (`logmonitor.jobs`). `JobManager` is an in-memory async queue
  with:
  - idempotency keys,
  - fingerprint deduplication while a job is active,
  - bounded history,
  - filtered, sorted and paged listing.
- **Runners** (`logmonitor.runners`, `logmonitor.integrity_runner`).
  `DiscoveryRunner`, `CollectionRunner` and `IntegrityRunner` run one sweep
  across all servers, with bounded concurrency.

## Installation

```
pip install .
```

Install the test dependencies with:

```
pip install .[test]
```

## Loading configuration

```python
from logmonitor.config import AppMode, load_runtime_for_mode

cfg = load_runtime_for_mode("config.yaml", AppMode.HTTP)
print(cfg.server.port)                    # 8080 unless configured
print(cfg.collector.store_raw_content)    # False by default
for check in cfg.env_checks:
    print(check.name, check.status.value)
```

`load_runtime(path)` is the same as `load_runtime_for_mode(path, AppMode.HTTP)`.
`load(path)` applies a smaller set of checks and defaults, and requires
`database.host` and `database.dbname`.

A minimal runtime configuration:

```yaml
security:
  integrity_hmac_key: "${INTEGRITY_HMAC_KEY}"
ssh:
  insecure_ignore_host_key: true
servers:
  - name: web-1
    host: 192.0.2.10
    username: monitor
    auth_type: key
    auth_value: /home/monitor/.ssh/id_ed25519
```

Some rules enforced by validation:

- `security.integrity_hmac_key` is required and must be at least 16 characters
  long.
- `security.auth_value_encryption_key` is required when `database.host`,
  `database.user` and `database.dbname` are all set and `runtime.dry_run` is
  off.
- `ssh.known_hosts_path` defaults to `~/.ssh/known_hosts` unless
  `ssh.insecure_ignore_host_key` is true.
- Every server needs a `name`, `host`, `username` and `auth_value`.
  `auth_type` must be `password` or `key`. `os_type` must be empty, `linux`,
  `windows` or `macos`.

Configuration problems raise `ConfigError`. `DatabaseConfig.dsn()` builds a
PostgreSQL connection string from the database section.

## Scheduling

```python
from logmonitor.scheduler import Scheduler, parse_interval

scheduler = Scheduler()
scheduler.add_func("collection", parse_interval("*/5 * * * *"), lambda: print("tick"))
scheduler.start()
...
scheduler.stop()
```

Each job runs once as soon as the scheduler starts, then once per interval.

- An exception raised by a job is logged and does not stop its thread.
- Jobs can only be added before `start()`.
- Invalid intervals and unsupported expressions raise `SchedulerError`.

## Async jobs

```python
from logmonitor.jobs import JobCanceledError, JobManager, JobOptions, ListFilter, TaskSpec

def discover(cancel):
    if cancel.is_set():
        raise JobCanceledError()
    return {"found": 3}

manager = JobManager(JobOptions(workers=2, queue_size=128, history_limit=1000))
manager.start()
job, reused = manager.submit(TaskSpec(job_type="discovery", run=discover, idempotency_key="req-1"))
print(manager.get_job(job.id).status)
page = manager.list_jobs_page(ListFilter(job_type="discovery", limit=20))
manager.shutdown(timeout=10)
```

**Runner.** A runner receives the manager's cancel event (a `threading.Event`).
The job's outcome depends on how the runner ends:

- If it returns, the job is `succeeded` and its return value is stored as JSON
  text in `Job.result`.
- If it raises `JobCanceledError`, the job is `canceled`.
- If it raises any other exception, the job is `failed`.

**Submitting.** `submit` returns `(job, reused)`. `reused` is true when the
idempotency key or an active fingerprint matched an existing job. `submit`
raises:

- `QueueFullError` when the queue is full,
- `ShuttingDownError` after `shutdown`.

**Reading.** `get_job` raises `JobNotFoundError` for an unknown id.

**Shutdown.** `shutdown(timeout)` raises `TimeoutError` if workers are still
busy when the timeout runs out.

## Sweep runners

The runners do not contain storage, SSH or log-processing logic. You pass in
objects that provide the following methods:

| Parameter | Methods |
| --- | --- |
| `servers` | `list_servers()` |
| `log_files` | `list_log_files_by_server(server_id)` |
| `collector` | `collect_log_file(server, log_file)` |
| `discovery` | `discover_and_sync(server)` |
| `integrity` | `check_log_file(server, log_file)` |
| `health` (optional) | `should_skip(server)`, `record_success(server_id)`, `record_failure(server, error)`, `record_degraded(server_id, message)` |

**Servers.** Each server needs `id` and `name`. A server whose `status` is
`inactive` is skipped.

**Log files.** Each log file needs `is_active` and `path`. Only active log
files are processed.

**Integrity results.** A result whose `status` is `error` counts as a failed
check, and its `error_message` is used as the error. A result whose `status`
is `tampered` counts as a successful check that found tampering.

```python
from logmonitor.locks import LockManager
from logmonitor.runners import CollectionRunner, RunnerOptions

runner = CollectionRunner(
    repo, repo, collector,
    lock_manager=LockManager(),
    options=RunnerOptions(max_server_workers=4, max_log_file_workers_per_host=2),
)
runner.run()
```

**Locking.** With a `lock_manager`, a server whose key `server:<id>` is
already held is skipped.

**Health recording.** Outcomes are sent to `health`:

- success when every log file worked,
- failure when none worked,
- degraded otherwise.

For integrity sweeps, the degraded message comes from
`build_integrity_degraded_message`.

**Stopping early.** Setting `stop_event` stops a sweep from starting more work.

## What this package does not do

It has no HTTP API, no command-line program and no database storage. It does
not connect to servers over SSH and does not read, hash or store log entries
itself. Those parts are supplied by the objects you hand to the runners.

## Running the tests

```
pytest
```