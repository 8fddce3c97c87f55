[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vpnctl"
version = "0.1.0"
description = "Web control panel for running several OpenVPN tunnels with monitoring, scheduled actions and an iptables kill switch"
requires-python = ">=3.10"
keywords = ["openvpn", "vpn", "tunnel", "iptables", "killswitch", "monitoring", "cron", "wsgi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = [
    "werkzeug",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
vpnctl = "vpnctl.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["vpnctl"]

[tool.pytest.ini_options]
addopts = "-ra"
