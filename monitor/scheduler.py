"""Rule evaluation scheduler: finds due rules and evaluates them on a worker pool."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, wait

import schedule

from alerts.evaluation import EvaluationEngine
from models.alerts import utcnow
from models.enums import VerdictKind
from models.rules import InvalidRuleConfig
from monitor.evaluator import EvaluatorTimeout, EvaluatorUnavailable

logger = logging.getLogger("pulse.scheduler")


class InFlightRegistry:
    """Rule ids currently being evaluated. A rule can be claimed by one worker at a time."""

    def __init__(self):
        self._ids = set()
        self._lock = threading.Lock()

    def try_acquire(self, rule_id):
        with self._lock:
            if rule_id in self._ids:
                return False
            self._ids.add(rule_id)
            return True

    def release(self, rule_id):
        with self._lock:
            self._ids.discard(rule_id)

    def __contains__(self, rule_id):
        with self._lock:
            return rule_id in self._ids

    def __len__(self):
        with self._lock:
            return len(self._ids)


class RuleScheduler:
    def __init__(self, db, evaluator, lifecycle, engine=None, in_flight=None,
                 max_workers=8, evaluation_timeout=10, interval_seconds=15):
        self.db = db
        self.evaluator = evaluator
        self.lifecycle = lifecycle
        self.engine = engine or EvaluationEngine()
        self.in_flight = in_flight or InFlightRegistry()
        self.evaluation_timeout = evaluation_timeout
        self.interval = interval_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pulse-rule")
        # Evaluator calls run separately so a hung call can be abandoned at the timeout.
        self._calls = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pulse-eval")
        self._scheduler = schedule.Scheduler()
        self._thread = None
        self._running = False
        self._consecutive_failures = 0

    # --- Ticks ---

    def tick(self, now=None):
        """Expire silences, then dispatch every due rule. Returns the dispatched rule ids."""
        dispatched, _ = self._dispatch(now or utcnow())
        return dispatched

    def run_once(self, now=None):
        """Tick and wait until the dispatched evaluations finish."""
        dispatched, futures = self._dispatch(now or utcnow())
        wait(futures)
        return dispatched

    def _dispatch(self, now):
        try:
            self.lifecycle.expire_silences(now)
        except Exception:
            logger.exception("Silence expiry failed")

        dispatched, futures = [], []
        for rule in self.db.fetch_due_rules(now):
            try:
                rule.validate()
            except InvalidRuleConfig as e:
                logger.warning(f"Skipping invalid rule: {e}")
                self.db.flag_rule_invalid(rule.id, str(e), now)
                continue

            if not self.in_flight.try_acquire(rule.id):
                logger.debug(f"Rule {rule.id} still in flight, skipping")
                continue
            try:
                futures.append(self._pool.submit(self._evaluate_rule, rule, now))
            except RuntimeError:
                self.in_flight.release(rule.id)
                logger.warning("Worker pool is shut down, stopping dispatch")
                break
            dispatched.append(rule.id)

        if dispatched:
            logger.debug(f"Dispatched {len(dispatched)} rules")
        return dispatched, futures

    def _sample(self, rule):
        """Call the evaluator within the timeout. Returns (sample, error, call).

        The timeout runs from when the call starts, not from when it was queued.
        `call` is the evaluator future, which may still be running after a timeout.
        """
        started = threading.Event()

        def call():
            started.set()
            return self.evaluator.evaluate(rule, self.evaluation_timeout)

        future = self._calls.submit(call)
        started.wait()
        try:
            return future.result(timeout=self.evaluation_timeout), None, future
        except FuturesTimeout:
            timeout = EvaluatorTimeout(f"no answer within {self.evaluation_timeout}s", rule_id=rule.id)
            return None, timeout, future
        except EvaluatorUnavailable as e:
            return None, e, future
        except Exception as e:
            logger.exception(f"Evaluator raised for rule {rule.id}")
            return None, EvaluatorUnavailable(str(e) or type(e).__name__, rule_id=rule.id), future

    def _evaluate_rule(self, rule, now):
        started = time.monotonic()
        result_text, verdict, error_text, call = "failed", None, None, None
        try:
            alert = self.lifecycle.open_alert(rule)
            sample, error, call = self._sample(rule)
            if error is not None:
                error_text = str(error)
                logger.warning(f"Rule {rule.id} evaluation error: {error_text}")
            verdict = self.engine.evaluate(rule, sample, alert.status if alert else None, now, error=error,
                                           last_verdict=alert.last_verdict if alert else None)
            transition = self.lifecycle.apply_verdict(rule, verdict)
            result_text = self._describe(verdict, error_text)
            return transition
        except Exception as e:
            logger.exception(f"Evaluation of rule {rule.id} failed")
            result_text, error_text = f"failed: {e}", str(e)
        finally:
            try:
                self.db.record_evaluation(
                    rule.id, now, result_text,
                    verdict=verdict.kind if verdict else None,
                    value=verdict.value if verdict else None,
                    error=error_text,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            except Exception:
                logger.exception(f"Could not record evaluation of rule {rule.id}")
            if call is None:
                self.in_flight.release(rule.id)
            else:
                # An abandoned call keeps the rule claimed until it returns.
                call.add_done_callback(lambda _: self.in_flight.release(rule.id))

    @staticmethod
    def _describe(verdict, error_text):
        if verdict.kind == VerdictKind.ERROR:
            return f"error: {error_text}"
        if verdict.kind == VerdictKind.NO_DATA:
            return "no_data (breach)" if verdict.breaching else "no_data"
        return f"{verdict.kind.value} ({verdict.value:g})"

    def test_rules(self, rules, now=None):
        """Dry run: what each rule would decide right now. Nothing is written."""
        now = now or utcnow()
        results = []
        for rule in rules:
            try:
                rule.validate()
            except InvalidRuleConfig as e:
                results.append({"rule": rule, "status": None, "verdict": None, "error": str(e)})
                continue
            alert = self.lifecycle.open_alert(rule)
            status = alert.status if alert else None
            sample, error, _ = self._sample(rule)
            verdict = self.engine.evaluate(rule, sample, status, now, error=error,
                                           last_verdict=alert.last_verdict if alert else None)
            results.append({
                "rule": rule,
                "status": status,
                "verdict": verdict,
                "error": str(error) if error else None,
            })
        return results

    # --- Background loop ---

    def start(self):
        """Start ticking in the background."""
        if self._running:
            return
        self._running = True

        self._scheduler.every(self.interval).seconds.do(self._tick_job)

        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (tick every {self.interval}s)")

    def stop(self):
        """Stop ticking and let in-flight evaluations finish."""
        self._running = False
        self._scheduler.clear()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self._pool.shutdown(wait=True)
        self._calls.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def _run_loop(self):
        self._tick_job()
        while self._running:
            self._scheduler.run_pending()
            time.sleep(1)

    def _tick_job(self):
        try:
            self.tick()
            self._consecutive_failures = 0
        except Exception as e:
            self._consecutive_failures += 1
            logger.error(f"Tick failed ({self._consecutive_failures} consecutive): {e}")
            if self._consecutive_failures >= 5:
                logger.critical("5+ consecutive tick failures!")
