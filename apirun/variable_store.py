# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

import logging
import threading

from .models import IDENTIFIER_RE
from .storage import MemoryStore

log = logging.getLogger('apirun')


class VariableStore:
    """
    Named environments and their variables, read from and written through
    to a persistence backend (MemoryStore, YamlStore or anything with the
    same environment methods).

    Every read returns a fresh snapshot and every write goes straight to the
    backend, so a value set by one request is seen by the next one.
    """

    def __init__(self, storage):
        self.storage = storage
        self._lock = threading.RLock()

    def get_active_environment(self):
        with self._lock:
            for env in self.storage.list_environments():
                if env.is_active:
                    return env
        return None

    def get_environment(self, environment_id):
        with self._lock:
            return self.storage.get_environment(environment_id)

    def activate(self, environment_id):
        """Makes one environment active and deactivates all the others."""
        with self._lock:
            target = self.storage.get_environment(environment_id)
            for env in self.storage.list_environments():
                if env.is_active and env.id != target.id:
                    self.storage.update_environment(env.id, is_active=False)
            if not target.is_active:
                self.storage.update_environment(target.id, is_active=True)
            log.info(f"Active environment: {target.name}")

    def get_variable(self, environment_id, name):
        with self._lock:
            return self.storage.get_environment(environment_id).variables.get(name)

    def set_variable(self, environment_id, name, value):
        self.apply(environment_id, [('set', name, value)])

    def unset_variable(self, environment_id, name):
        self.apply(environment_id, [('unset', name, None)])

    def apply(self, environment_id, mutations):
        """
        Applies a list of ('set', name, value) / ('unset', name, None)
        entries with a single write. Nothing is written if any entry is invalid.
        """
        mutations = list(mutations)
        if not mutations:
            return
        for op, name, value in mutations:
            if not IDENTIFIER_RE.match(name or ''):
                raise ValueError(f"Invalid variable name: {name!r}")
            if op == 'set' and not isinstance(value, str):
                raise TypeError(f"Value of '{name}' must be a string, got {type(value).__name__}")
            if op not in ('set', 'unset'):
                raise ValueError(f"Unknown environment operation: {op}")

        with self._lock:
            env = self.storage.get_environment(environment_id)
            variables = dict(env.variables)
            for op, name, value in mutations:
                if op == 'set':
                    variables[name] = value
                else:
                    variables.pop(name, None)
            self.storage.update_environment(environment_id, variables=variables)
        log.debug(f"Environment '{env.name}' updated: {[(op, name) for op, name, _ in mutations]}")

    def isolated(self, environment_id=None):
        """
        Returns a VariableStore holding a private, active copy of one
        environment. Writes to the copy never reach this store.
        """
        copy_store = MemoryStore()
        if environment_id is not None:
            with self._lock:
                env = self.storage.get_environment(environment_id)
            copy_store.create_environment(
                env.name, variables=env.variables, is_active=True, id=env.id
            )
        return VariableStore(copy_store)
