# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

import argparse
import os
import sys
import threading

import yaml

from . import __version__
from .core_logic import load_config, run_collection, run_collections, script_limits, setup_logging
from .log_reporter import generate_html_report
from .models import ApiRunError, ScriptError
from .script_parser import iter_statements, parse_script, parse_statement
from .storage import YamlStore
from .template_resolver import find_placeholders
from .transport import RequestsTransport
from .variable_store import VariableStore


def open_workspace(path):
    root = os.path.abspath(path)
    if not os.path.isdir(root):
        print(f"Error: Workspace not found: {root}")
        sys.exit(1)
    try:
        return root, load_config(root), YamlStore(root)
    except (ApiRunError, ValueError, yaml.YAMLError) as e:
        print(f"Error: Could not load workspace {root}: {e}")
        sys.exit(1)


def handle_run_command(args):
    """
    Handles the logic for the 'run' command.
    """
    root, config, storage = open_workspace(args.workspace)
    log, log_file_path = setup_logging(
        os.path.join(root, config['LOG_DIR']), os.path.basename(root)
    )
    log.info(f"Log file will be saved to: {log_file_path}")

    store = VariableStore(storage)
    try:
        env_name = args.env or config['ACTIVE_ENVIRONMENT']
        if env_name:
            store.activate(storage.find_environment(env_name).id)
        names = args.collection or config['COLLECTION_ORDER']
        if names:
            collections = [storage.find_collection(str(name)) for name in names]
        else:
            collections = storage.list_collections()
    except ApiRunError as e:
        log.error(str(e))
        sys.exit(1)

    active = store.get_active_environment()
    environment_id = active.id if active else None
    if active is None:
        log.warning("No active environment: only pathVariables will be resolved.")

    if not collections:
        log.warning(f"No collections found in: {root}")
        sys.exit(0)

    transport = RequestsTransport(timeout=config['REQUEST_TIMEOUT'])
    limits = script_limits(config)
    cancel_event = threading.Event()

    try:
        if args.parallel and len(collections) > 1:
            log.info(f"Running {len(collections)} collections in parallel on isolated environment copies.")
            jobs = [(collection, environment_id) for collection in collections]
            results = run_collections(jobs, store, transport, limits, log,
                                      max_workers=config['MAX_WORKERS'], cancel_event=cancel_event)
        else:
            results = []
            for collection in collections:
                results.append(run_collection(collection, store, environment_id, transport, limits, log, cancel_event))
    except KeyboardInterrupt:
        cancel_event.set()
        log.warning("Execution interrupted.")
        sys.exit(130)

    records = [record for batch in results for record in batch]
    print(f"\nLog file generated at: {log_file_path}")

    if not args.no_report:
        report_dir = os.path.join(root, config['REPORT_DIR'])
        stem = os.path.splitext(os.path.basename(log_file_path))[0]
        report_name = f"report_{stem[len('run_'):]}.html"
        title = collections[0].name if len(collections) == 1 else os.path.basename(root)
        try:
            generate_html_report(title, records, os.path.join(report_dir, report_name))
        except OSError as e:
            log.error(f"Failed to generate HTML report: {e}")
            sys.exit(1)

    if any(not record.passed for record in records):
        sys.exit(1)


def check_request(request):
    """Returns a list of syntax problems in the scripts of one request."""
    problems = []
    for label, source in (('preScript', request.pre_script), ('postScript', request.post_script)):
        try:
            parse_script(source)
        except ScriptError as e:
            problems.append(f"{label}: {e}")
        except RecursionError:
            problems.append(f"{label}: expression nested too deeply")
    for line, text in iter_statements(request.tests):
        try:
            parse_statement(text, line)
        except ScriptError as e:
            problems.append(f"tests: {e}")
        except RecursionError:
            problems.append(f"tests: line {line}: expression nested too deeply")
    return problems


def handle_check_command(args):
    """
    Handles the 'check' command: parses every script and lists the
    variables each request needs.
    """
    _, _, storage = open_workspace(args.workspace)
    errors = 0
    for collection in storage.list_collections():
        print(f"{collection.name} ({collection.size} requests)")
        for request in collection.requests:
            texts = [request.url, request.body] + list(request.headers.values())
            names = sorted({name for text in texts for name in find_placeholders(text)})
            print(f"  {request.method:7} {request.name}  variables: {', '.join(names) or '-'}")
            for problem in check_request(request):
                print(f"    ERROR {problem}")
                errors += 1
    if errors:
        print(f"\n{errors} script error(s) found.")
        sys.exit(1)


def handle_envs_command(args):
    """
    Handles the 'envs' command: lists environments, optionally activating one.
    """
    _, _, storage = open_workspace(args.workspace)
    store = VariableStore(storage)
    if args.activate:
        try:
            store.activate(storage.find_environment(args.activate).id)
        except ApiRunError as e:
            print(f"Error: {e}")
            sys.exit(1)
    for env in storage.list_environments():
        marker = '*' if env.is_active else ' '
        print(f"{marker} {env.name} ({len(env.variables)} variables)")


def main(argv=None):
    description = (
        f"ApiRun v{__version__}\n"
        "License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)\n"
        "Author: Huberto Gastal Mayer (hubertogm@gmail.com)\n\n"
        "ApiRun - Run HTTP request collections against named environments."
    )
    parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest='command', required=True, help='Available commands')

    # --- 'run' command ---
    parser_run = subparsers.add_parser('run', help='Run the collections of a workspace.')
    parser_run.add_argument('workspace', help="Path to the workspace directory.")
    parser_run.add_argument(
        '--collection',
        action='append',
        help="Name or id of a collection to run (repeatable). Defaults to COLLECTION_ORDER or all."
    )
    parser_run.add_argument('--env', help="Name or id of the environment to activate before running.")
    parser_run.add_argument(
        '--parallel',
        action='store_true',
        help="Run collections concurrently, each on its own copy of the environment."
    )
    parser_run.add_argument(
        '--no-report',
        action='store_true',
        help="Disable automatic HTML report generation after execution."
    )
    parser_run.set_defaults(func=handle_run_command)

    # --- 'check' command ---
    parser_check = subparsers.add_parser('check', help='Check scripts for syntax errors and list variables.')
    parser_check.add_argument('workspace', help="Path to the workspace directory.")
    parser_check.set_defaults(func=handle_check_command)

    # --- 'envs' command ---
    parser_envs = subparsers.add_parser('envs', help='List environments.')
    parser_envs.add_argument('workspace', help="Path to the workspace directory.")
    parser_envs.add_argument('--activate', help="Name or id of the environment to make active.")
    parser_envs.set_defaults(func=handle_envs_command)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
