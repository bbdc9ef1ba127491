# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#
# Core logic: logging, configuration and the request pipeline
# (resolve -> pre-script -> send -> post-script -> tests).

import logging
import os
import re
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import yaml

from .assertions import run_tests
from .log_reporter import summarize
from .models import (
    ConfigError,
    ExecutionRecord,
    ResolutionError,
    Stage,
    Status,
    TransportError,
)
from .script_helpers import ScriptHelpers
from .script_sandbox import (
    POST_SCRIPT,
    PRE_SCRIPT,
    EnvironmentScope,
    ScriptContext,
    ScriptLimits,
    run_script,
)
from .template_resolver import resolve

DEFAULT_CONFIG = {
    'COLLECTION_ORDER': None,
    'ACTIVE_ENVIRONMENT': None,
    'SCRIPT_TIMEOUT': 1.0,
    'SCRIPT_MAX_STEPS': 20000,
    'REQUEST_TIMEOUT': 30,
    'MAX_WORKERS': 4,
    'LOG_DIR': 'logs',
    'REPORT_DIR': 'reports',
}

# Record status for a failure in each stage
STAGE_FAILURE_STATUS = {
    Stage.RESOLVING: Status.RESOLUTION_FAILED,
    Stage.PRE_SCRIPT: Status.SCRIPT_FAILED,
    Stage.SENDING: Status.TRANSPORT_FAILED,
    Stage.POST_SCRIPT: Status.SCRIPT_FAILED,
    Stage.TESTING: Status.SCRIPT_FAILED,
}


# --- ANSI Color Codes for Logging ---
class Color:
    """ANSI color codes for terminal output."""
    GREY = "\033[90m"
    CYAN = "\033[96m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BOLD = "\033[1m"
    RESET = "\033[0m"


class ColorFormatter(logging.Formatter):
    """Custom formatter to add colors to console log messages."""

    FORMATS = {
        logging.DEBUG: logging.Formatter(f'{Color.GREY}DEBUG: %(message)s{Color.RESET}'),
        logging.INFO: logging.Formatter('%(message)s'),
        logging.WARNING: logging.Formatter(f'{Color.YELLOW}WARNING: %(message)s{Color.RESET}'),
        logging.ERROR: logging.Formatter(f'{Color.RED}ERROR: %(message)s{Color.RESET}'),
        logging.CRITICAL: logging.Formatter(f'{Color.BOLD}{Color.RED}CRITICAL: %(message)s{Color.RESET}'),
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.FORMATS[logging.INFO])
        message = log_fmt.format(record)
        text = record.getMessage()

        if record.levelno == logging.INFO:
            if text.strip().startswith("PASSED:"):
                message = f"{Color.GREEN}{message}{Color.RESET}"
            elif text.startswith("Dispatching"):
                message = f"{Color.CYAN}{message}{Color.RESET}"
            elif text.startswith(("Executing collection", "Processing request",
                                  "Summary:", "---", "Execution finished.")):
                message = f"{Color.BOLD}{message}{Color.RESET}"
        elif record.levelno == logging.ERROR:
            if "FAILED:" in text or "Error executing script" in text:
                message = f"{Color.BOLD}{Color.RED}ERROR: {text}{Color.RESET}"

        return message


# --- Logging Setup ---
def setup_logging(log_dir, run_name="apirun_run", description=None):
    """
    Configures the 'apirun' logger: everything goes to a log file,
    INFO and above to the console. Returns (logger, log_file_path).
    """
    os.makedirs(log_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    safe_name = re.sub(r'\W+', '_', run_name)
    log_filepath = os.path.join(log_dir, f"run_{safe_name}_{timestamp}.log")

    log = logging.getLogger('apirun')
    log.setLevel(logging.DEBUG)

    # Remove existing handlers to avoid duplicate logs
    for handler in log.handlers[:]:
        log.removeHandler(handler)
        handler.close()

    fh = logging.FileHandler(log_filepath, encoding='utf-8')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    log.addHandler(fh)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorFormatter())
    log.addHandler(ch)

    log.info(f"Run Name: {run_name}")
    if description:
        log.info(f"Description: {description}")

    return log, log_filepath


# --- Configuration Loading ---
def load_config(root):
    """Loads config.yaml (or config.yml) from the workspace root, merged over the defaults."""
    config = dict(DEFAULT_CONFIG)
    config_path = os.path.join(root, 'config.yaml')
    if not os.path.exists(config_path):
        config_path = os.path.join(root, 'config.yml')
    if not os.path.exists(config_path):
        return config

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML syntax error in {config_path}: {e}") from e

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid format in {config_path}. Expected a dictionary.")
    config.update(data)
    validate_config(config, config_path)
    return config


def validate_config(config, source='config'):
    for key in ('SCRIPT_TIMEOUT', 'REQUEST_TIMEOUT'):
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"{source}: {key} must be a positive number, got {value!r}")
    for key in ('SCRIPT_MAX_STEPS', 'MAX_WORKERS'):
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigError(f"{source}: {key} must be a positive integer, got {value!r}")
    order = config['COLLECTION_ORDER']
    if order is not None and not isinstance(order, list):
        raise ConfigError(f"{source}: COLLECTION_ORDER must be a list of collection names.")


def script_limits(config):
    return ScriptLimits(timeout=float(config['SCRIPT_TIMEOUT']), max_steps=int(config['SCRIPT_MAX_STEPS']))


# --- Request Pipeline ---
def _fail(record, stage, reason, log):
    record.failed_stage = stage
    record.state = Stage.FAILED
    record.status = STAGE_FAILURE_STATUS.get(stage, Status.SCRIPT_FAILED)
    record.error = reason
    log.error(f"FAILED: [{record.request_name}] {stage}: {reason}")


def _run_pipeline(record, request, store, environment_id, transport, limits, helpers, log):
    record.state = Stage.RESOLVING
    env = store.get_environment(environment_id) if environment_id is not None else None
    try:
        resolved = resolve(request, request.path_variables, env)
    except ResolutionError as e:
        _fail(record, Stage.RESOLVING, str(e), log)
        return
    record.resolved = resolved

    record.state = Stage.PRE_SCRIPT
    scope = EnvironmentScope(store, environment_id)
    record.pre_script = run_script(
        request.pre_script, ScriptContext(resolved, None, scope, helpers), PRE_SCRIPT, limits
    )
    if record.pre_script.ok and record.pre_script.mutations:
        # Values set by the pre-script apply to this request too
        env = store.get_environment(environment_id)
        try:
            record.resolved = resolve(request, request.path_variables, env)
        except ResolutionError as e:
            log.warning(f"Keeping the first resolution of '{request.name}': {e}")

    record.state = Stage.SENDING
    try:
        response = transport.send(record.resolved)
    except TransportError as e:
        _fail(record, Stage.SENDING, str(e), log)
        return
    record.response = response

    record.state = Stage.POST_SCRIPT
    context = ScriptContext(record.resolved, response, scope, helpers)
    record.post_script = run_script(request.post_script, context, POST_SCRIPT, limits)

    record.state = Stage.TESTING
    record.tests = run_tests(request.tests, context, limits)

    record.state = Stage.DONE
    script_errors = [r.error for r in (record.pre_script, record.post_script) if not r.ok]
    if script_errors:
        record.status = Status.SCRIPT_FAILED
        record.error = str(script_errors[0])
    else:
        record.status = Status.SUCCEEDED


def execute_request(request, store, environment_id, transport, limits=None, log=None, helpers=None):
    """
    Runs one request through the whole pipeline against the environment
    'environment_id' of 'store' (a VariableStore). Always returns an
    ExecutionRecord; nothing raises out of this function.
    """
    log = log or logging.getLogger('apirun')
    limits = limits or ScriptLimits()
    helpers = helpers or ScriptHelpers()
    record = ExecutionRecord(request_id=request.id, request_name=request.name)

    start = time.time()
    try:
        _run_pipeline(record, request, store, environment_id, transport, limits, helpers, log)
    except Exception as e:
        log.error(f"Critical error during processing of {request.name}: {e}", exc_info=True)
        _fail(record, record.state, f"{type(e).__name__}: {e}", log)
    record.duration_ms = round((time.time() - start) * 1000, 2)
    return record


# --- Collection Runner ---
def run_collection(collection, store, environment_id, transport, limits=None, log=None, cancel_event=None):
    """
    Runs the requests of a collection one after the other, in collection
    order. Environment changes made by one request are visible to the next.
    Setting 'cancel_event' stops the run before the next request.
    """
    log = log or logging.getLogger('apirun')
    helpers = ScriptHelpers()
    log.info("-" * 50)
    log.info(f"Executing collection: {collection.name} ({collection.size} requests)")

    records = []
    for index, request in enumerate(collection.requests):
        if cancel_event is not None and cancel_event.is_set():
            log.warning(f"Run cancelled before request {index + 1} of {collection.size}.")
            break
        log.info("-" * 50)
        log.info(f"Processing request: {request.name}")
        records.append(execute_request(request, store, environment_id, transport, limits, log, helpers))

    log_summary(records, log)
    return records


def log_summary(records, log):
    summary = summarize(records)
    asserts = summary['tests_passed'] + summary['tests_failed']
    log.info("-" * 50)
    log.info("Execution finished.")
    log.info(
        f"Summary: {summary['total']} total requests | {summary['succeeded']} success | "
        f"{summary['failed']} failure\n"
        f"         Asserts: {asserts} total | {summary['tests_passed']} passed | "
        f"{summary['tests_failed']} failed"
    )


def run_collections(jobs, store, transport, limits=None, log=None, max_workers=4, shared=False, cancel_event=None):
    """
    Runs independent collections concurrently.

    'jobs' is a list of (collection, environment_id). Unless 'shared' is
    True each job works on its own copy of its environment, so runs cannot
    see each other's writes. Returns one list of records per job, in order.
    """
    log = log or logging.getLogger('apirun')

    def run_job(job):
        collection, environment_id = job
        job_store = store if shared else store.isolated(environment_id)
        return run_collection(collection, job_store, environment_id, transport, limits, log, cancel_event)

    if cancel_event is None:
        cancel_event = threading.Event()

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [pool.submit(run_job, job) for job in jobs]
        try:
            return [future.result() for future in futures]
        except KeyboardInterrupt:
            # Leaving the pool waits for running jobs, so stop them first
            cancel_event.set()
            raise
