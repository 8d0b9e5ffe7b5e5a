[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dmailer"
version = "0.1.0"
description = "A small mail transport agent for local mbox and remote SMTP delivery, with a spool queue"
requires-python = ">=3.10"
keywords = ["mail", "smtp", "mta", "sendmail", "mbox", "spool"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Email :: Mail Transport Agents",
]
dependencies = [
    "dnspython",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
dmailer = "dmailer.agent:main"
dmailer-mbox-create = "dmailer.mbox_create:main"

[tool.hatch.build.targets.wheel]
packages = ["dmailer"]

[tool.pytest.ini_options]
addopts = "-ra"
