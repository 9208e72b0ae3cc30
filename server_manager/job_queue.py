"""
Durable job queue on Redis.

Layout for a queue named <name>:
    queue:<name>:id          job id counter
    queue:<name>:job:<id>    job hash (payload, state, attempts, result, error)
    queue:<name>:wait        jobs ready to run (LPUSH in, RIGHT out)
    queue:<name>:active      jobs claimed by a worker
    queue:<name>:delayed     jobs waiting out a retry backoff, scored by due time (ms)

Delivery is at-least-once: a claimed job is moved atomically from the wait list
to the active list, and a handler outcome decides whether it completes, fails
or is redelivered after the backoff.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import redis

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    payload: dict
    state: JobState
    attempts_made: int
    max_attempts: int
    created_at: float
    result: Any = None
    error: Optional[str] = None
    finished_at: Optional[float] = None

    @property
    def attempt(self) -> int:
        """1-based number of the attempt being processed."""
        return self.attempts_made

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts


@dataclass
class JobStatus:
    job_id: str
    status: str  # pending, in-progress, completed, failed
    result: Any = None
    error: Optional[str] = None
    attempts_made: int = 0

    def to_dict(self) -> dict:
        return {
            'job_id': self.job_id,
            'status': self.status,
            'result': self.result,
            'error': self.error,
            'attempts_made': self.attempts_made,
        }


@dataclass
class JobResult:
    """Outcome of one handler invocation."""
    value: Any = None
    error: Optional[BaseException] = None
    retryable: bool = False

    @property
    def is_success(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> "JobResult":
        return cls(value=value)

    @classmethod
    def retry(cls, error: BaseException) -> "JobResult":
        return cls(error=error, retryable=True)

    @classmethod
    def fail(cls, error: BaseException) -> "JobResult":
        return cls(error=error, retryable=False)


Handler = Callable[[Job], JobResult]


class JobQueue:
    """
    One queue per job type, processed by a bounded pool of worker threads.

    The Redis client must be created with decode_responses=True.
    """

    EVENTS = ('completed', 'failed', 'retrying', 'drained')

    def __init__(
        self,
        name: str,
        redis_client: redis.Redis,
        concurrency: int = 3,
        max_attempts: int = 3,
        backoff_ms: int = 1000,
        poll_interval: float = 0.5
    ):
        self.name = name
        self.redis = redis_client
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.poll_interval = poll_interval

        self._listeners: Dict[str, List[Callable]] = {event: [] for event in self.EVENTS}
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._busy = 0
        self._drained = True

    def _key(self, *parts) -> str:
        return ':'.join(('queue', self.name) + tuple(str(p) for p in parts))

    def _job_key(self, job_id: str) -> str:
        return self._key('job', job_id)

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    # ==================== Producer side ====================

    def enqueue(self, payload: dict) -> str:
        """Add a job and return its id without waiting for it to run."""
        job_id = str(self.redis.incr(self._key('id')))

        pipe = self.redis.pipeline()
        pipe.hset(self._job_key(job_id), mapping={
            'id': job_id,
            'payload': json.dumps(payload),
            'state': JobState.WAITING.value,
            'attempts_made': 0,
            'max_attempts': self.max_attempts,
            'created_at': time.time(),
        })
        pipe.lpush(self._key('wait'), job_id)
        pipe.execute()

        logger.info(f"[job {job_id}] Enqueued on {self.name}")
        return job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        data = self.redis.hgetall(self._job_key(job_id))
        if not data:
            return None

        result = data.get('result')
        return Job(
            id=data['id'],
            payload=json.loads(data['payload']),
            state=JobState(data['state']),
            attempts_made=int(data.get('attempts_made', 0)),
            max_attempts=int(data.get('max_attempts', self.max_attempts)),
            created_at=float(data['created_at']),
            result=json.loads(result) if result is not None else None,
            error=data.get('error'),
            finished_at=float(data['finished_at']) if data.get('finished_at') else None,
        )

    def status(self, job_id: str) -> Optional[JobStatus]:
        """Caller-facing job status, or None for an unknown job id."""
        job = self.get_job(job_id)
        if job is None:
            return None

        if job.state == JobState.COMPLETED:
            status = 'completed'
        elif job.state == JobState.FAILED:
            status = 'failed'
        elif job.state == JobState.WAITING and job.attempts_made == 0:
            status = 'pending'
        else:
            status = 'in-progress'

        return JobStatus(
            job_id=job.id,
            status=status,
            result=job.result,
            error=job.error,
            attempts_made=job.attempts_made,
        )

    def counts(self) -> dict:
        return {
            'waiting': self.redis.llen(self._key('wait')),
            'active': self.redis.llen(self._key('active')),
            'delayed': self.redis.zcard(self._key('delayed')),
        }

    # ==================== Listeners ====================

    def on(self, event: str, callback: Callable):
        """Subscribe to completed, failed, retrying or drained notifications."""
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args):
        for callback in self._listeners[event]:
            try:
                callback(*args)
            except Exception:
                # Listeners are informational only
                logger.exception(f"Listener for '{event}' on {self.name} raised")

    # ==================== Consumer side ====================

    def _promote_delayed(self):
        delayed = self._key('delayed')
        for job_id in self.redis.zrangebyscore(delayed, 0, self._now_ms()):
            # zrem decides which worker gets to promote the job
            if self.redis.zrem(delayed, job_id):
                pipe = self.redis.pipeline()
                pipe.hset(self._job_key(job_id), 'state', JobState.WAITING.value)
                pipe.lpush(self._key('wait'), job_id)
                pipe.execute()

    def _claim(self) -> Optional[Job]:
        self._promote_delayed()
        job_id = self.redis.lmove(self._key('wait'), self._key('active'), 'RIGHT', 'LEFT')
        if job_id is None:
            return None

        key = self._job_key(job_id)
        pipe = self.redis.pipeline()
        pipe.hincrby(key, 'attempts_made', 1)
        pipe.hset(key, mapping={
            'state': JobState.ACTIVE.value,
            'processed_at': time.time(),
        })
        pipe.execute()
        return self.get_job(job_id)

    def _finish(self, job: Job, state: JobState, result: Any = None, error: str = None):
        mapping = {'state': state.value, 'finished_at': time.time()}
        if result is not None:
            mapping['result'] = json.dumps(result)
        if error is not None:
            mapping['error'] = error

        pipe = self.redis.pipeline()
        pipe.hset(self._job_key(job.id), mapping=mapping)
        pipe.lrem(self._key('active'), 1, job.id)
        pipe.execute()

    def _schedule_retry(self, job: Job, error: str):
        pipe = self.redis.pipeline()
        pipe.hset(self._job_key(job.id), mapping={
            'state': JobState.DELAYED.value,
            'error': error,
        })
        pipe.lrem(self._key('active'), 1, job.id)
        pipe.zadd(self._key('delayed'), {job.id: self._now_ms() + self.backoff_ms})
        pipe.execute()

    def process_next(self, handler: Handler) -> Optional[Job]:
        """
        Claim one ready job and run the handler on it.

        Returns:
            The job as stored after processing, or None if nothing was ready
        """
        with self._state_lock:
            self._busy += 1
        try:
            job = self._claim()
            if job is None:
                return None
            with self._state_lock:
                self._drained = False
            try:
                self._run(job, handler)
            except redis.RedisError:
                raise
            except Exception as e:
                # e.g. a handler result that cannot be stored as JSON
                logger.exception(f"[job {job.id}] Could not record outcome")
                self._finish(job, JobState.FAILED, error=f"{type(e).__name__}: {e}")
                self._emit('failed', job, e)
            return self.get_job(job.id)
        finally:
            with self._state_lock:
                self._busy -= 1
            self._check_drained()

    def _run(self, job: Job, handler: Handler):
        logger.info(f"[job {job.id}] Attempt {job.attempt}/{job.max_attempts}")
        try:
            result = handler(job)
        except Exception as e:
            logger.exception(f"[job {job.id}] Handler raised")
            result = JobResult.retry(e)

        if result.is_success:
            self._finish(job, JobState.COMPLETED, result=result.value)
            logger.info(f"[job {job.id}] Completed")
            self._emit('completed', job, result.value)
            return

        error = str(result.error) or type(result.error).__name__
        if result.retryable and job.attempts_made < job.max_attempts:
            self._schedule_retry(job, error)
            logger.warning(
                f"[job {job.id}] Attempt {job.attempt} failed, retrying in "
                f"{self.backoff_ms}ms: {error}"
            )
            self._emit('retrying', job, result.error)
            return

        self._finish(job, JobState.FAILED, error=error)
        logger.error(f"[job {job.id}] Failed after {job.attempts_made} attempt(s): {error}")
        self._emit('failed', job, result.error)

    def _check_drained(self):
        with self._state_lock:
            if self._drained or self._busy:
                return
            if self.redis.llen(self._key('wait')) or self.redis.zcard(self._key('delayed')):
                return
            self._drained = True
        self._emit('drained')

    def recover_stalled(self) -> List[str]:
        """
        Put jobs left in the active list by a dead process back in line.

        Only safe while no worker of this queue is running anywhere.
        """
        recovered = []
        while True:
            job_id = self.redis.lmove(self._key('active'), self._key('wait'), 'RIGHT', 'LEFT')
            if job_id is None:
                break
            self.redis.hset(self._job_key(job_id), 'state', JobState.WAITING.value)
            recovered.append(job_id)
        if recovered:
            logger.warning(f"Recovered stalled job(s) on {self.name}: {', '.join(recovered)}")
        return recovered

    def _work(self, handler: Handler):
        while not self._stop_event.is_set():
            try:
                job = self.process_next(handler)
            except redis.RedisError as e:
                logger.error(f"Queue {self.name} backend error: {e}")
                job = None
            except Exception:
                logger.exception(f"Queue {self.name} worker error")
                job = None
            if job is None:
                self._stop_event.wait(self.poll_interval)

    def start(self, handler: Handler):
        """Run `concurrency` worker threads until stop() is called."""
        if self._threads:
            raise RuntimeError(f"Queue {self.name} is already running")

        self._stop_event.clear()
        for i in range(self.concurrency):
            thread = threading.Thread(
                target=self._work,
                args=(handler,),
                name=f"{self.name}-worker-{i + 1}",
                daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.concurrency} worker(s) on {self.name}")

    def stop(self, timeout: float = None):
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info(f"Stopped workers on {self.name}")

    @property
    def running(self) -> bool:
        return bool(self._threads)
