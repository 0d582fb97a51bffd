"""Shared constants for jaxbgen."""

from __future__ import annotations

from typing import Tuple

PACKAGE_NAME = "jaxbgen"

DEFAULT_TOOL_VERSION = "4.0.5"
TOOL_GROUP = "com.sun.xml.bind"
# Bundled XJC modules; each is resolved at the tool version.
TOOL_MODULES: Tuple[str, ...] = ("jaxb-xjc", "jaxb-core", "jaxb-impl")
DEFAULT_RUNTIME_COORDINATES: Tuple[str, ...] = (
    "jakarta.xml.bind:jakarta.xml.bind-api:4.0.2",
    "jakarta.activation:jakarta.activation-api:2.1.3",
    "org.eclipse.angus:angus-activation:2.0.2",
)
XJC_MAIN_CLASS = "com.sun.tools.xjc.XJCFacade"
MAVEN_CENTRAL = "https://repo1.maven.org/maven2"
CHECKSUM_ALGORITHMS: Tuple[str, ...] = ("sha512", "sha256", "sha1")

ENGINES = ("maven", "system")
DEFAULT_ENGINE = "maven"

CONFIG_FILENAME = "jaxbgen.toml"
CONFIG_ENV_VAR = "JAXBGEN_CONFIG"
CACHE_ENV_VAR = "JAXBGEN_CACHE_DIR"
DEFAULT_CACHE_DIR_NAME = "jaxbgen"
ENGINE_ENV_VAR = "JAXBGEN_ENGINE"
TOOL_VERSION_ENV_VAR = "JAXBGEN_TOOL_VERSION"
JAVA_OPTS_ENV_VAR = "JAXBGEN_JAVA_OPTS"
SOURCE_ROOTS_ENV_VAR = "JAXBGEN_SOURCE_ROOTS"

DEFAULT_JAVA_OPTS = ["-Xmx1g"]
DEFAULT_STATE_DIR = "build/jaxbgen"
DEFAULT_OUTPUT_ROOT = "build/generated/jaxb"
DEFAULT_SOURCE_SET = "main"
FINGERPRINT_FORMAT = 1

DISCOVER_STEP = "discover-schemas"
AGGREGATE_STEP = "generate"
GENERATE_STEP_PREFIX = "generate-"
COMPILE_STEP = "compile"

EXIT_CODE_SUBPROCESS = 1
EXIT_CODE_USAGE = 2
EXIT_CODE_INTERRUPT = 130

HTTP_TIMEOUT_SECONDS = 30.0
MAX_CAPTURE_CHARS = 200_000
TERMINATE_GRACE_SECONDS = 5.0
