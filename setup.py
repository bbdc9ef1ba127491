# -*- coding: utf-8 -*-
from setuptools import setup, find_packages

AUTHOR = "Huberto Gastal Mayer"
EMAIL = "hubertogm@gmail.com"
LICENSE = "GPLv3"
DESCRIPTION = "ApiRun - Run HTTP request collections against named environments, with scripts and tests"

setup(
    name="apirun",
    version="0.3.0",
    description=DESCRIPTION,
    long_description=f"{DESCRIPTION}. Created by {AUTHOR}.",
    author=AUTHOR,
    author_email=EMAIL,
    license=LICENSE,

    packages=find_packages(exclude=['tests', 'tests.*']),

    install_requires=[
        'requests',
        'PyYAML',
        'Faker',
    ],
    extras_require={
        'test': ['pytest'],
    },

    # Creates the 'apirun' command in the terminal
    entry_points={
        'console_scripts': [
            'apirun=apirun.apirun:main',
        ],
    },

    classifiers=[
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
        'Environment :: Console',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Software Development :: Testing',
    ],
    python_requires='>=3.8',
)
