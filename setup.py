#!/usr/bin/env python3

import os
import re
from setuptools import setup

# Utility function to read the README file.
# Used for the long_description.


def read(fname):
    return open(os.path.join(os.path.dirname(__file__), fname)).read()


def find_version(source):
    version_file = read(source)
    version_match = re.search(r"^__VERSION__ = ['\"]([^'\"]*)['\"]", version_file, re.M)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version string.")


NAME = 'plugsign'

setup(
    version=find_version('src/plugsign/__init__.py'),
    name=NAME,
    description='Embedded signatures for plugin files, checked against a trusted key registry',
    packages=['plugsign'],
    package_dir={'': 'src'},
    license='MIT-0',
    long_description=read('README.rst'),
    long_description_content_type='text/x-rst',
    keywords=['plugins', 'signatures', 'minisign', 'attestation'],
    install_requires=[
        'pynacl',
    ],
    extras_require={
        'test': ['pytest'],
    },
    python_requires='>=3.11',
    entry_points={
        'console_scripts': [
            'plugsign=plugsign:command'
        ],
    },
)
