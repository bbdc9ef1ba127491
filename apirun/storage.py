# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

"""
Persistence for collections, requests and environments.

MemoryStore keeps everything in memory. YamlStore keeps the same data in a
workspace directory and writes every change back to disk:

    workspace/
        config.yaml
        environments/development.yaml
        collections/user-management-api/collection.yaml
        collections/user-management-api/get-user-profile.yaml
"""

import copy
import json
import logging
import os
import re
import tempfile
import threading
import uuid

import yaml

from .models import Collection, Environment, HttpRequest, NotFoundError, now_iso

log = logging.getLogger('apirun')

COLLECTION_FILE = 'collection.yaml'

ENVIRONMENT_FIELDS = ('name', 'variables', 'is_active')
COLLECTION_FIELDS = ('name', 'description')
REQUEST_FIELDS = (
    'name', 'method', 'url', 'headers', 'body', 'body_type',
    'pre_script', 'post_script', 'tests', 'path_variables',
)


def new_id():
    return uuid.uuid4().hex


def slugify(text):
    """
    Converts a collection, request or environment name (e.g. "Get All Users")
    into a safe filename (e.g. "get-all-users").
    """
    text = str(text or '').lower()
    text = re.sub(r'\s+', '-', text)
    text = re.sub(r'[^a-z0-9\-_]', '', text)
    text = re.sub(r'-+', '-', text).strip('-')
    return text or 'item'


def _check_fields(kind, updates, allowed):
    unknown = set(updates) - set(allowed)
    if unknown:
        raise ValueError(f"Cannot update {kind} field(s): {', '.join(sorted(unknown))}")


class MemoryStore:
    """In-memory CRUD over collections, requests and environments."""

    def __init__(self):
        self._collections = {}
        self._environments = {}
        self._lock = threading.RLock()

    # --- Collections ---

    def list_collections(self):
        with self._lock:
            return [copy.deepcopy(c) for c in self._collections.values()]

    def get_collection(self, collection_id):
        with self._lock:
            return copy.deepcopy(self._get_collection(collection_id))

    def find_collection(self, name_or_id):
        """Looks a collection up by id, then by case-insensitive name."""
        with self._lock:
            if name_or_id in self._collections:
                return copy.deepcopy(self._collections[name_or_id])
            for collection in self._collections.values():
                if collection.name.lower() == str(name_or_id).lower():
                    return copy.deepcopy(collection)
        raise NotFoundError('Collection', name_or_id)

    def create_collection(self, name, description='', id=None, requests=None, created_at=None):
        collection = Collection(
            id=id or new_id(),
            name=name,
            description=description or '',
            created_at=created_at or now_iso(),
        )
        with self._lock:
            self._collections[collection.id] = collection
            for request in requests or []:
                self._add_request(collection, request)
            return copy.deepcopy(collection)

    def update_collection(self, collection_id, **updates):
        _check_fields('collection', updates, COLLECTION_FIELDS)
        with self._lock:
            collection = self._get_collection(collection_id)
            for key, value in updates.items():
                setattr(collection, key, value)
            return copy.deepcopy(collection)

    def delete_collection(self, collection_id):
        with self._lock:
            self._get_collection(collection_id)
            del self._collections[collection_id]

    def search_collections(self, query):
        """Case-insensitive match on collection name or description."""
        query = (query or '').lower()
        with self._lock:
            return [
                copy.deepcopy(c) for c in self._collections.values()
                if query in c.name.lower() or query in c.description.lower()
            ]

    # --- Requests ---

    def get_request(self, collection_id, request_id):
        with self._lock:
            return copy.deepcopy(self._get_request(collection_id, request_id)[1])

    def create_request(self, collection_id, request):
        """Appends a request (an HttpRequest or a dict of its fields) to a collection."""
        with self._lock:
            collection = self._get_collection(collection_id)
            return copy.deepcopy(self._add_request(collection, request))

    def update_request(self, collection_id, request_id, **updates):
        _check_fields('request', updates, REQUEST_FIELDS)
        with self._lock:
            collection, request = self._get_request(collection_id, request_id)
            data = {**request.__dict__, **updates, 'updated_at': now_iso()}
            updated = HttpRequest(**data)
            collection.requests = [updated if r is request else r for r in collection.requests]
            return copy.deepcopy(updated)

    def delete_request(self, collection_id, request_id):
        with self._lock:
            collection, request = self._get_request(collection_id, request_id)
            collection.requests.remove(request)

    # --- Environments ---

    def list_environments(self):
        with self._lock:
            return [copy.deepcopy(e) for e in self._environments.values()]

    def get_environment(self, environment_id):
        with self._lock:
            return copy.deepcopy(self._get_environment(environment_id))

    def find_environment(self, name_or_id):
        with self._lock:
            if name_or_id in self._environments:
                return copy.deepcopy(self._environments[name_or_id])
            for env in self._environments.values():
                if env.name.lower() == str(name_or_id).lower():
                    return copy.deepcopy(env)
        raise NotFoundError('Environment', name_or_id)

    def create_environment(self, name, variables=None, is_active=False, id=None, created_at=None):
        env = Environment(
            id=id or new_id(),
            name=name,
            variables=dict(variables or {}),
            is_active=is_active,
            created_at=created_at or now_iso(),
        )
        with self._lock:
            self._environments[env.id] = env
            return copy.deepcopy(env)

    def update_environment(self, environment_id, **updates):
        _check_fields('environment', updates, ENVIRONMENT_FIELDS)
        with self._lock:
            env = self._get_environment(environment_id)
            if 'variables' in updates:
                variables = dict(updates['variables'])
                for key, value in variables.items():
                    if not isinstance(value, str):
                        raise TypeError(f"Environment '{env.name}': value of '{key}' must be a string")
                env.variables = variables
            if 'name' in updates:
                env.name = updates['name']
            if 'is_active' in updates:
                env.is_active = bool(updates['is_active'])
            env.updated_at = now_iso()
            return copy.deepcopy(env)

    def delete_environment(self, environment_id):
        with self._lock:
            self._get_environment(environment_id)
            del self._environments[environment_id]

    # --- Internal lookups (callers hold the lock) ---

    def _get_collection(self, collection_id):
        try:
            return self._collections[collection_id]
        except KeyError:
            raise NotFoundError('Collection', collection_id) from None

    def _get_request(self, collection_id, request_id):
        collection = self._get_collection(collection_id)
        for request in collection.requests:
            if request.id == request_id:
                return collection, request
        raise NotFoundError('Request', request_id)

    def _get_environment(self, environment_id):
        try:
            return self._environments[environment_id]
        except KeyError:
            raise NotFoundError('Environment', environment_id) from None

    def _add_request(self, collection, request):
        if isinstance(request, dict):
            request = HttpRequest(**{'id': new_id(), **request})
        else:
            request = copy.deepcopy(request)
        request.collection_id = collection.id
        collection.requests.append(request)
        return request


# --- YAML workspace ---

class ForceLiteralDumper(yaml.SafeDumper):
    """Always uses the '|' (literal) style for strings containing newlines."""

    def represent_scalar(self, tag, value, style=None):
        if isinstance(value, str) and '\n' in value:
            style = '|'
        return super().represent_scalar(tag, value, style)


def dump_yaml(data, path):
    """Writes through a temporary file so a failed dump leaves the old file intact."""
    fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path) or '.', prefix='.', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, Dumper=ForceLiteralDumper, allow_unicode=True,
                      default_flow_style=False, sort_keys=False)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def load_yaml(path):
    """Loads a YAML mapping, raising ValueError if the file holds anything else."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        log.error(f"YAML syntax error in {path}: {e}")
        raise
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level.")
    return data


def _strings(mapping, path, key):
    mapping = mapping or {}
    if not isinstance(mapping, dict):
        raise ValueError(f"{path}: '{key}' must be a mapping.")
    return {str(k): '' if v is None else str(v) for k, v in mapping.items()}


def parse_request_file(file_path, request_id):
    """
    Parses a request .yaml file into an HttpRequest.
    Accepts flat keys (method, url, ...) or a nested 'request:' block.
    """
    data = load_yaml(file_path)
    req_block = data.get('request') if isinstance(data.get('request'), dict) else {}
    fields = {
        'id': str(data.get('id') or request_id),
        'name': data.get('name') or os.path.splitext(os.path.basename(file_path))[0],
        'method': data.get('method') or req_block.get('method') or 'GET',
        'url': data.get('url') or req_block.get('url') or '',
        'headers': _strings(data.get('headers'), file_path, 'headers'),
        'body': data.get('body') or '',
        'body_type': data.get('bodyType') or ('raw' if data.get('body') else 'none'),
        'pre_script': data.get('preScript') or '',
        'post_script': data.get('postScript') or '',
        'tests': data.get('tests') or '',
        'path_variables': _strings(data.get('pathVariables'), file_path, 'pathVariables'),
    }
    if isinstance(fields['body'], (dict, list)):
        # A structured body is sent as JSON
        fields['body'] = json.dumps(fields['body'], indent=2, ensure_ascii=False)
        fields['body_type'] = 'json'
    elif not isinstance(fields['body'], str):
        fields['body'] = str(fields['body'])
    if data.get('createdAt'):
        fields['created_at'] = str(data['createdAt'])
    if data.get('updatedAt'):
        fields['updated_at'] = str(data['updatedAt'])
    return HttpRequest(**fields)


def request_to_file_data(request):
    data = request.to_dict()
    data.pop('collectionId', None)
    return data


class YamlStore(MemoryStore):
    """MemoryStore loaded from, and written back to, a workspace directory."""

    def __init__(self, root):
        super().__init__()
        self.root = os.path.abspath(root)
        self.collections_dir = os.path.join(self.root, 'collections')
        self.environments_dir = os.path.join(self.root, 'environments')
        self._env_paths = {}
        self._collection_dirs = {}
        self._request_paths = {}
        self._load()

    # --- Loading ---

    def _load(self):
        if not os.path.isdir(self.root):
            raise NotFoundError('Workspace', self.root)

        if os.path.isdir(self.environments_dir):
            for file_name in sorted(os.listdir(self.environments_dir)):
                if file_name.endswith(('.yaml', '.yml')):
                    self._load_environment(os.path.join(self.environments_dir, file_name))

            active = [env for env in self._environments.values() if env.is_active]
            for env in active[1:]:
                log.warning(f"Environment '{env.name}' is also marked active; keeping '{active[0].name}' active.")
                env.is_active = False

        if os.path.isdir(self.collections_dir):
            for dir_name in sorted(os.listdir(self.collections_dir)):
                path = os.path.join(self.collections_dir, dir_name)
                if os.path.isdir(path):
                    self._load_collection(path)

        log.debug(f"Workspace loaded from {self.root}: "
                  f"{len(self._collections)} collections, {len(self._environments)} environments.")

    def _load_environment(self, path):
        data = load_yaml(path)
        stem = os.path.splitext(os.path.basename(path))[0]
        env = super().create_environment(
            data.get('name') or stem,
            variables=_strings(data.get('variables'), path, 'variables'),
            is_active=bool(data.get('isActive', False)),
            id=str(data.get('id') or stem),
            created_at=data.get('createdAt'),
        )
        self._env_paths[env.id] = path

    def _load_collection(self, dir_path):
        dir_name = os.path.basename(dir_path)
        config_path = os.path.join(dir_path, COLLECTION_FILE)
        meta = load_yaml(config_path) if os.path.exists(config_path) else {}

        files = sorted(
            f for f in os.listdir(dir_path)
            if f.endswith(('.yaml', '.yml')) and f != COLLECTION_FILE
        )
        order = [str(f) for f in meta.get('order') or []]
        missing = [f for f in order if f not in files]
        for file_name in missing:
            log.warning(f"File listed in 'order' not found in {dir_path}: {file_name}")
        ordered = [f for f in order if f in files] + [f for f in files if f not in order]

        collection = super().create_collection(
            meta.get('name') or dir_name,
            description=meta.get('description') or '',
            id=str(meta.get('id') or dir_name),
            created_at=meta.get('createdAt'),
        )
        self._collection_dirs[collection.id] = dir_path
        for file_name in ordered:
            file_path = os.path.join(dir_path, file_name)
            stem = os.path.splitext(file_name)[0]
            request = parse_request_file(file_path, f"{dir_name}/{stem}")
            super().create_request(collection.id, request)
            self._request_paths[request.id] = file_path

    # --- Writing ---

    def _write_environment(self, env):
        path = self._env_paths.get(env.id)
        if path is None:
            os.makedirs(self.environments_dir, exist_ok=True)
            path = self._unique_path(self.environments_dir, slugify(env.name), '.yaml')
            self._env_paths[env.id] = path
        data = env.to_dict()
        dump_yaml(data, path)
        log.debug(f"Environment '{env.name}' written to {path}")

    def _write_collection(self, collection):
        dir_path = self._collection_dirs.get(collection.id)
        if dir_path is None:
            os.makedirs(self.collections_dir, exist_ok=True)
            dir_path = self._unique_path(self.collections_dir, slugify(collection.name), '')
            os.makedirs(dir_path, exist_ok=True)
            self._collection_dirs[collection.id] = dir_path

        order = []
        for request in collection.requests:
            path = self._request_paths.get(request.id)
            if path is None:
                path = self._unique_path(dir_path, slugify(request.name), '.yaml')
                self._request_paths[request.id] = path
            dump_yaml(request_to_file_data(request), path)
            order.append(os.path.basename(path))

        dump_yaml({
            'id': collection.id,
            'name': collection.name,
            'description': collection.description,
            'createdAt': collection.created_at,
            'order': order,
        }, os.path.join(dir_path, COLLECTION_FILE))

    @staticmethod
    def _unique_path(directory, stem, suffix):
        path = os.path.join(directory, stem + suffix)
        counter = 2
        while os.path.exists(path):
            path = os.path.join(directory, f"{stem}-{counter}{suffix}")
            counter += 1
        return path

    def _remove(self, path):
        if path and os.path.exists(path):
            os.remove(path)

    # --- Mutations write through ---

    def create_collection(self, name, description='', id=None, requests=None, created_at=None):
        with self._lock:
            collection = super().create_collection(name, description, id, requests, created_at)
            self._write_collection(collection)
            return collection

    def update_collection(self, collection_id, **updates):
        with self._lock:
            collection = super().update_collection(collection_id, **updates)
            self._write_collection(collection)
            return collection

    def delete_collection(self, collection_id):
        with self._lock:
            collection = self._get_collection(collection_id)
            for request in collection.requests:
                self._remove(self._request_paths.pop(request.id, None))
            dir_path = self._collection_dirs.pop(collection_id, None)
            super().delete_collection(collection_id)
            if dir_path:
                self._remove(os.path.join(dir_path, COLLECTION_FILE))
                if os.path.isdir(dir_path) and not os.listdir(dir_path):
                    os.rmdir(dir_path)

    def create_request(self, collection_id, request):
        with self._lock:
            created = super().create_request(collection_id, request)
            self._write_collection(self._get_collection(collection_id))
            return created

    def update_request(self, collection_id, request_id, **updates):
        with self._lock:
            updated = super().update_request(collection_id, request_id, **updates)
            self._write_collection(self._get_collection(collection_id))
            return updated

    def delete_request(self, collection_id, request_id):
        with self._lock:
            super().delete_request(collection_id, request_id)
            self._remove(self._request_paths.pop(request_id, None))
            self._write_collection(self._get_collection(collection_id))

    def create_environment(self, name, variables=None, is_active=False, id=None, created_at=None):
        with self._lock:
            env = super().create_environment(name, variables, is_active, id, created_at)
            self._write_environment(env)
            return env

    def update_environment(self, environment_id, **updates):
        with self._lock:
            env = super().update_environment(environment_id, **updates)
            self._write_environment(env)
            return env

    def delete_environment(self, environment_id):
        with self._lock:
            super().delete_environment(environment_id)
            self._remove(self._env_paths.pop(environment_id, None))


# --- Sample data ---

def seed_store(store=None):
    """
    Fills a store with the sample 'User Management API' collection and the
    Development / Production environments.
    """
    store = store or MemoryStore()
    store.create_environment('Development', id='1', is_active=True, variables={
        'baseUrl': 'https://api-dev.example.com',
        'token': 'dev-token-123',
        'userId': '1',
    })
    store.create_environment('Production', id='2', variables={
        'baseUrl': 'https://api.example.com',
        'token': 'prod-token-456',
        'userId': '1',
    })

    collection = store.create_collection(
        'User Management API',
        description='APIs for user registration, authentication, and profile management',
        id='1',
    )
    store.create_request(collection.id, HttpRequest(
        id='1_req_1',
        name='Get User Profile',
        method='GET',
        url='{{baseUrl}}/users/{{userId}}',
        headers={'Authorization': 'Bearer {{token}}', 'Content-Type': 'application/json'},
        post_script='set userId = body.id',
        tests='test "Status code is 200", status == 200',
        path_variables={'userId': '123'},
    ))
    store.create_request(collection.id, HttpRequest(
        id='1_req_2',
        name='Create User',
        method='POST',
        url='{{baseUrl}}/users',
        headers={'Content-Type': 'application/json'},
        body='{\n  "name": "John Doe",\n  "email": "john@example.com",\n  "password": "securePassword123"\n}',
        body_type='json',
        tests=(
            'test "User created successfully", status == 201\n'
            'test "Response has an id", body.id exists'
        ),
    ))
    return store
