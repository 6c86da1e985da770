# -*- coding: utf-8 -*-
#
# Copyright (C) 2024 The escape-pod authors
# All rights reserved.
#
# This software is licensed as described in the file LICENSE, which
# you should have received as part of this distribution.
#
import os
import sys
from setuptools import setup, find_packages
from importlib import import_module

here = os.path.abspath(os.path.dirname(__file__))
readme_path = os.path.join(here, 'README.md')
README = ''
if os.path.exists(readme_path):
    with open(readme_path) as f:
        README = f.read()

sys.path.insert(0, os.path.join(here, 'src', 'escapepod'))
v = import_module('version')

requires = [
    'attrs',
    'loguru',
    'munch',
    'pyroute2',
    'ruamel.yaml',
    'typer',
]

test_requires = [
    'pytest',
]

setup(name='escapepod',
      version=v.VERSION,
      description='Network namespace that bypasses a system-wide VPN tunnel',
      long_description=README,
      classifiers=[
          "Environment :: Console",
          "Intended Audience :: System Administrators",
          "License :: OSI Approved :: MIT License",
          "Programming Language :: Python :: 3",
          "Programming Language :: Python :: 3.9",
          "Programming Language :: Python :: 3.10",
          "Programming Language :: Python :: 3.11",
          "Programming Language :: Python :: 3.12",
          "Operating System :: POSIX :: Linux",
          "Topic :: System :: Networking",
          "Development Status :: 4 - Beta",
          "Natural Language :: English",
      ],
      author='The escape-pod authors',
      keywords='wireguard vpn netns iptables',
      package_dir={'': 'src'},
      packages=find_packages(where='src'),
      include_package_data=True,
      zip_safe=False,
      python_requires='>=3.9',
      install_requires=requires,
      extras_require={'test': test_requires},
      entry_points="""\
      [console_scripts]
      escape-pod = escapepod.cli:app
      """,
      )
