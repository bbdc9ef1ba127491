# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

import random
import string
import time
import uuid

from faker import Faker

from .models import ScriptError

"""
Data helpers inspired by Postman's dynamic variables.
In scripts they are plain function calls.
Ex: set email = fake("email")
"""

# Faker providers a script may ask for by name.
FAKE_PROVIDERS = (
    'name', 'first_name', 'last_name', 'email', 'user_name', 'phone_number',
    'address', 'city', 'country', 'company', 'job', 'word', 'sentence', 'text',
    'url', 'ipv4', 'date', 'iso8601', 'color_name', 'uuid4',
)

MAX_RANDOM_CHARS = 1024


class ScriptHelpers:
    """
    Contains the utility functions exposed to scripts.
    Every public method listed in FUNCTIONS becomes a builtin.
    """

    FUNCTIONS = ('timestamp', 'uuid', 'random_int', 'random_choice', 'random_chars', 'fake')

    def __init__(self, locale=None, seed=None):
        self._faker = Faker(locale)
        self._random = random.Random(seed)
        if seed is not None:
            self._faker.seed_instance(seed)

    def builtins(self):
        return {name: getattr(self, name) for name in self.FUNCTIONS}

    def timestamp(self):
        """Returns the current Unix timestamp in seconds."""
        return int(time.time())

    def uuid(self):
        return str(uuid.UUID(int=self._random.getrandbits(128), version=4))

    def random_int(self, min_val=0, max_val=1000):
        """Returns a random integer within the range."""
        try:
            low, high = int(min_val), int(max_val)
        except (TypeError, ValueError):
            raise ScriptError("random_int() expects two integers")
        if low > high:
            raise ScriptError("random_int(): min is greater than max")
        return self._random.randint(low, high)

    def random_choice(self, *choices):
        """Returns a random choice from the provided arguments."""
        if len(choices) == 1 and isinstance(choices[0], list):
            choices = choices[0]
        if not choices:
            return ""
        return self._random.choice(list(choices))

    def random_chars(self, length=10):
        """Returns a random string of letters and digits."""
        try:
            length = int(length)
        except (TypeError, ValueError):
            raise ScriptError("random_chars() expects an integer length")
        if length < 0 or length > MAX_RANDOM_CHARS:
            raise ScriptError(f"random_chars(): length must be between 0 and {MAX_RANDOM_CHARS}")
        chars = string.ascii_letters + string.digits
        return ''.join(self._random.choice(chars) for _ in range(length))

    def fake(self, kind):
        """Returns fake data from an allowed Faker provider, e.g. fake("email")."""
        if kind not in FAKE_PROVIDERS:
            raise ScriptError(f"fake(): unknown provider {kind!r}")
        return str(getattr(self._faker, kind)())
