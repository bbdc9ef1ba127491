# -*- coding: utf-8 -*-
#
# ApiRun - Scripted HTTP Collection Runner
# Author: Huberto Gastal Mayer (hubertogm@gmail.com)
# License: GPLv3 (https://www.gnu.org/licenses/gpl-3.0.html)
# Project: ApiRun - Run HTTP request collections against named environments
#

__version__ = "0.3.0"
