#!/usr/bin/env python3
"""relocbundle - build a self-contained, relocatable bundle for a macOS executable.

Given an executable that links against shared libraries scattered across
build and install locations, relocbundle:

1. enumerates each binary's direct library references (otool or macholib),
2. resolves every reference (absolute, @rpath, @loader_path,
   @executable_path or bare name) to a file on disk,
3. walks the transitive closure, copying each library into a flat
   ``libs/`` directory,
4. rewrites every reference to a relative token and re-signs the result.

The output has a fixed layout consumed by installer builders::

    <bundle>/bin/<executable>
    <bundle>/libs/<flat list of dylibs>
    <bundle>/etc/data/<auxiliary data>

Usage (CLI):
    relocbundle bundle build/ -n my_backend -o backend/
    relocbundle deps build/my_backend
    relocbundle fetch backend/etc

Usage (API):
    from relocbundle import BundleBuilder

    builder = BundleBuilder("build/", "my_backend", "backend/")
    result = builder.build()
"""

import argparse
import datetime
import enum
import glob
import logging
import os
import re
import shutil
import stat
import struct
import subprocess
import sys
import tarfile
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Mapping

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from macholib import mach_o
from macholib.MachO import MachO
from macholib.ptypes import sizeof

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Loader substitution tokens
RPATH_TOKEN = "@rpath"
LOADER_TOKEN = "@loader_path"
EXECUTABLE_TOKEN = "@executable_path"

# Bundle layout
BIN_DIR = "bin"
LIBS_DIR = "libs"
ETC_DIR = "etc"
DATA_DIR = "data"
KEEP_FILE = ".gitkeep"

# Install name prefixes written by the rewriter
EXECUTABLE_LIB_PREFIX = f"{EXECUTABLE_TOKEN}/../{LIBS_DIR}/"
LOADER_LIB_PREFIX = f"{LOADER_TOKEN}/"

# Libraries under these prefixes ship with the OS and are never bundled
SYSTEM_PREFIXES = ("/usr/lib/", "/System/")

# Fallback library locations, searched after the executable-relative ones
DEFAULT_SEARCH_PATHS = (
    "/opt/homebrew/opt/*/lib",
    "/opt/homebrew/lib",
    "/usr/local/lib",
    "/opt/local/lib",
    "/usr/lib",
)

# Environment variables holding extra library directories
SEARCH_PATH_ENV_VARS = ("DYLD_LIBRARY_PATH", "DYLD_FALLBACK_LIBRARY_PATH")

# Auxiliary data archive extracted into etc/data
DEFAULT_DATA_URL = "https://www.astron.nl/iers/WSRT_Measures.ztar"

DEFAULT_OUTPUT_DIR = "bundle"
DEFAULT_INSPECTOR = "otool"
DEFAULT_SIGN_IDENTITY = "-"

# Environment variable names
ENV_SIGN_IDENTITY = "RELOCBUNDLE_SIGN_IDENTITY"

# ----------------------------------------------------------------------------
# Optional dotenv support


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .relocbundle.toml in current directory
    3. relocbundle.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If an explicit config_path does not exist

    Example .relocbundle.toml:
        [bundle]
        executable = "carta_backend"
        output = "src-tauri/backend"
        search_paths = ["/opt/carta-casacore/lib"]
        exclude = ["/opt/X11/lib/"]
        inspector = "macholib"
    """
    log = logging.getLogger("relocbundle")

    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".relocbundle.toml",
            cwd / "relocbundle.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError) as e:
                log.warning("Ignoring unreadable config %s: %s", path, e)
                continue

    return {}


def get_config_value(
    config: Mapping[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "bundle")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def get_config_list(
    config: Mapping[str, object], section: str, key: str
) -> list[str]:
    """Get a list of strings from config; a bare string becomes one item."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return []
    value = section_config.get(key, [])
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str)]
    return []


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


# ----------------------------------------------------------------------------
# Error handling


class BundlerError(Exception):
    """Base exception class for relocbundle errors."""


class CommandError(BundlerError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class FileError(BundlerError):
    """Exception raised when a file operation fails."""


class ConfigurationError(BundlerError):
    """Exception raised when configuration is invalid."""


class ValidationError(BundlerError):
    """Exception raised when input validation fails."""


class EnumerationError(BundlerError):
    """Exception raised when a binary's load commands cannot be read."""


class MissingDependencyError(BundlerError):
    """Exception raised after a walk that left references unresolved.

    Args:
        missing: Sorted, de-duplicated basenames of the unresolved references
    """

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__("Missing dependencies: " + ", ".join(missing))


class RewriteError(BundlerError):
    """Exception raised when a library reference cannot be rewritten."""


class SignError(BundlerError):
    """Exception raised when codesigning fails."""


class FetchError(BundlerError):
    """Exception raised when the auxiliary data archive cannot be fetched."""


# ----------------------------------------------------------------------------
# File validation

# Maximum file size for validation (1GB)
MAX_FILE_SIZE = 1024 * 1024 * 1024

# Mach-O magic numbers for binary validation
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}


def validate_file(
    path: Pathlike,
    check_executable: bool = False,
    check_macho: bool = False,
    max_size: int = MAX_FILE_SIZE,
) -> None:
    """Validate a file before copying it into the bundle.

    Checks that the path is an existing, readable, non-empty regular file
    no larger than max_size. Symbolic links are followed: installed
    libraries are commonly versioned symlinks.

    Args:
        path: Path to the file to validate
        check_executable: If True, verify the file is executable
        check_macho: If True, verify the file is a valid Mach-O binary
        max_size: Maximum allowed file size in bytes

    Raises:
        ValidationError: If any validation check fails
    """
    path = Path(path)

    if not path.exists():
        raise ValidationError(f"File does not exist: {path}")

    if not path.is_file():
        raise ValidationError(f"Path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise ValidationError(f"File is not readable: {path}")

    try:
        size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Cannot stat file {path}: {e}") from e

    if size == 0:
        raise ValidationError(f"File is empty (zero bytes): {path}")

    if size > max_size:
        raise ValidationError(
            f"File exceeds maximum size ({size} > {max_size} bytes): {path}"
        )

    if check_executable and not os.access(path, os.X_OK):
        raise ValidationError(f"File is not executable: {path}")

    if check_macho and not is_valid_macho(path):
        raise ValidationError(f"File is not a valid Mach-O binary: {path}")


def is_valid_macho(path: Pathlike) -> bool:
    """Check if a file starts with a Mach-O magic number."""
    path = Path(path)
    if not path.is_file():
        return False

    try:
        with open(path, "rb") as f:
            magic = f.read(4)
        return magic in MACHO_MAGIC_NUMBERS
    except OSError:
        return False


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    Uses shell=False; a missing tool is reported like a failed command.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Library references


class RefKind(enum.Enum):
    """How a raw library reference is anchored."""

    ABSOLUTE = "absolute"
    RPATH = "rpath"
    LOADER = "loader"
    EXECUTABLE = "executable"
    BARE = "bare"


_TOKEN_KINDS = {
    RPATH_TOKEN: RefKind.RPATH,
    LOADER_TOKEN: RefKind.LOADER,
    EXECUTABLE_TOKEN: RefKind.EXECUTABLE,
}


@dataclass(frozen=True)
class BinaryRef:
    """A dependency entry exactly as it appears inside a binary.

    Attributes:
        raw: The literal reference string
        kind: How the reference is anchored
        subpath: The part after the token (the whole path for ABSOLUTE,
            the relative path for BARE)
    """

    raw: str
    kind: RefKind
    subpath: str

    @classmethod
    def parse(cls, raw: str) -> "BinaryRef":
        """Classify a raw reference string."""
        raw = raw.strip()
        token, sep, rest = raw.partition("/")
        if sep and token in _TOKEN_KINDS:
            return cls(raw, _TOKEN_KINDS[token], rest)
        if raw.startswith("/"):
            return cls(raw, RefKind.ABSOLUTE, raw)
        return cls(raw, RefKind.BARE, raw)

    @property
    def name(self) -> str:
        """The referenced file's basename."""
        return os.path.basename(self.subpath)

    def is_system(self, prefixes: Iterable[str] = SYSTEM_PREFIXES) -> bool:
        """True if the reference points into an OS-provided location."""
        return self.kind is RefKind.ABSOLUTE and any(
            self.raw.startswith(prefix) for prefix in prefixes
        )

    def __str__(self) -> str:
        return self.raw


@dataclass(frozen=True)
class LoadCommands:
    """The library-related load commands of one binary."""

    install_id: str | None = None
    dependencies: tuple[str, ...] = ()
    rpaths: tuple[str, ...] = ()


# ----------------------------------------------------------------------------
# Platform toolchains


class Toolchain:
    """Reads and rewrites a binary's library references and signs it.

    Subclasses provide inspect(); rewriting and signing go through
    install_name_tool and codesign.

    Args:
        sign_identity: codesign identity ("-" for ad-hoc signing)
    """

    name = "base"

    def __init__(self, sign_identity: str | None = None):
        if sign_identity is None:
            sign_identity = os.getenv(ENV_SIGN_IDENTITY, DEFAULT_SIGN_IDENTITY)
        self.sign_identity = sign_identity
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        """Run a command and return its output."""
        return run_command(command, log=self.log)

    def inspect(self, path: Path) -> LoadCommands:
        """Read the load commands of a binary.

        Raises:
            EnumerationError: If the binary cannot be read
        """
        raise NotImplementedError

    def check_binary(self, path: Path) -> None:
        """Validate a library before it is copied into the bundle."""
        validate_file(path, check_macho=True)

    def change_reference(self, binary: Path, old: str, new: str) -> None:
        """Replace the dependency reference old with new in binary."""
        self.run_command(
            ["install_name_tool", "-change", old, new, str(binary)]
        )

    def change_id(self, binary: Path, new_id: str) -> None:
        """Set the install id of a library."""
        self.run_command(["install_name_tool", "-id", new_id, str(binary)])

    def sign(self, binary: Path) -> None:
        """Re-sign a binary after its load commands were changed."""
        self.run_command(
            ["codesign", "--force", "--sign", self.sign_identity, str(binary)]
        )


# Load commands naming a library the binary links against
DYLIB_LOAD_COMMANDS = (
    "LC_LOAD_DYLIB",
    "LC_LOAD_WEAK_DYLIB",
    "LC_REEXPORT_DYLIB",
    "LC_LOAD_UPWARD_DYLIB",
)

OTOOL_CMD_PATTERN = re.compile(r"^\s*cmd (LC_\w+)\s*$")
OTOOL_NAME_PATTERN = re.compile(r"^\s*(?:name|path) (.+) \(offset \d+\)\s*$")


class OtoolToolchain(Toolchain):
    """Toolchain that reads load commands from ``otool -l`` output."""

    name = "otool"

    def inspect(self, path: Path) -> LoadCommands:
        if not path.is_file():
            raise EnumerationError(
                f"Cannot find file {path} to read its dependencies"
            )
        try:
            output = self.run_command(["otool", "-l", str(path)])
        except CommandError as e:
            raise EnumerationError(f"Error running otool on {path}: {e}") from e
        return self.parse(output, path)

    @staticmethod
    def parse(output: str, path: Pathlike = "") -> LoadCommands:
        """Parse ``otool -l`` output into LoadCommands.

        Raises:
            EnumerationError: If a load command's name is missing
        """
        install_id = None
        dependencies: list[str] = []
        rpaths: list[str] = []
        wanted = ("LC_ID_DYLIB", "LC_RPATH") + DYLIB_LOAD_COMMANDS
        current = None

        for line in output.splitlines():
            match = OTOOL_CMD_PATTERN.match(line)
            if match:
                if current is not None:
                    raise EnumerationError(
                        f"Malformed otool output: failed to find name of "
                        f"{current} before next cmd in {path}"
                    )
                cmd = match.group(1)
                current = cmd if cmd in wanted else None
                continue

            if current is None:
                continue
            match = OTOOL_NAME_PATTERN.match(line)
            if not match:
                continue
            value = match.group(1)
            if current == "LC_ID_DYLIB":
                install_id = value
            elif current == "LC_RPATH":
                rpaths.append(value)
            elif value not in dependencies:
                dependencies.append(value)
            current = None

        if current is not None:
            raise EnumerationError(
                f"Malformed otool output: {current} has no name in {path}"
            )
        return LoadCommands(install_id, tuple(dependencies), tuple(rpaths))


class MachOToolchain(Toolchain):
    """Toolchain that reads load commands in-process with macholib.

    Every architecture slice of a universal binary is read; references
    are merged in slice order.
    """

    name = "macholib"

    LOAD_COMMANDS = {
        mach_o.LC_LOAD_DYLIB,
        mach_o.LC_LOAD_WEAK_DYLIB,
        mach_o.LC_REEXPORT_DYLIB,
        mach_o.LC_LOAD_UPWARD_DYLIB,
    }

    def inspect(self, path: Path) -> LoadCommands:
        try:
            macho = MachO(str(path))
        except (OSError, ValueError, struct.error) as e:
            raise EnumerationError(f"Cannot read Mach-O file {path}: {e}") from e

        install_id = None
        dependencies: list[str] = []
        rpaths: list[str] = []
        for header in macho.headers:
            for load_cmd, cmd, data in header.commands:
                if load_cmd.cmd == mach_o.LC_ID_DYLIB:
                    install_id = self._command_string(
                        load_cmd, cmd, data, cmd.name
                    )
                elif load_cmd.cmd in self.LOAD_COMMANDS:
                    name = self._command_string(load_cmd, cmd, data, cmd.name)
                    if name not in dependencies:
                        dependencies.append(name)
                elif load_cmd.cmd == mach_o.LC_RPATH:
                    rpath = self._command_string(load_cmd, cmd, data, cmd.path)
                    if rpath not in rpaths:
                        rpaths.append(rpath)
        return LoadCommands(install_id, tuple(dependencies), tuple(rpaths))

    @staticmethod
    def _command_string(load_cmd, cmd, data: bytes, offset) -> str:
        """Extract the NUL-terminated string an lc_str field points at."""
        start = offset - sizeof(load_cmd.__class__) - sizeof(cmd.__class__)
        raw = data[start:].split(b"\x00", 1)[0]
        return raw.decode(sys.getfilesystemencoding())


TOOLCHAINS: dict[str, type[Toolchain]] = {
    OtoolToolchain.name: OtoolToolchain,
    MachOToolchain.name: MachOToolchain,
}


def make_toolchain(
    inspector: str = DEFAULT_INSPECTOR, sign_identity: str | None = None
) -> Toolchain:
    """Create the toolchain for an inspector name ("otool" or "macholib")."""
    try:
        cls = TOOLCHAINS[inspector]
    except KeyError:
        raise ConfigurationError(
            f"Unknown inspector '{inspector}' "
            f"(expected one of: {', '.join(sorted(TOOLCHAINS))})"
        ) from None
    return cls(sign_identity=sign_identity)


# ----------------------------------------------------------------------------
# Dependency enumeration


class DependencyEnumerator:
    """Lists a binary's direct, non-system library references.

    Load commands are cached per source path; sources are never modified
    while a walk is in progress.

    Args:
        toolchain: The toolchain used to read load commands
        excluded_prefixes: Path prefixes of libraries never bundled
    """

    def __init__(
        self,
        toolchain: Toolchain,
        excluded_prefixes: Iterable[str] = SYSTEM_PREFIXES,
    ):
        self.toolchain = toolchain
        self.excluded_prefixes = tuple(excluded_prefixes)
        self._cache: dict[Path, LoadCommands] = {}
        self.log = logging.getLogger(self.__class__.__name__)

    def load(self, binary: Path) -> LoadCommands:
        """Return the (cached) load commands of a binary."""
        key = Path(os.path.abspath(binary))
        if key not in self._cache:
            self._cache[key] = self.toolchain.inspect(key)
        return self._cache[key]

    def dependencies(self, binary: Path) -> list[BinaryRef]:
        """Return binary's references minus its own id and system libraries."""
        commands = self.load(binary)
        refs = []
        for raw in commands.dependencies:
            if raw == commands.install_id:
                continue
            ref = BinaryRef.parse(raw)
            if ref.is_system(self.excluded_prefixes):
                continue
            refs.append(ref)
        self.log.debug(
            "%s -> %s", binary.name, ", ".join(r.raw for r in refs) or "-"
        )
        return refs


# ----------------------------------------------------------------------------
# Path resolution


def _first_existing(
    directories: Iterable[Path], names: Iterable[str]
) -> Path | None:
    """Return the first dir/name that is a file, directories outermost."""
    names = [n for n in dict.fromkeys(names) if n]
    for directory in directories:
        for name in names:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


class SearchPaths:
    """Ranked fallback directories, fixed for one packaging run.

    Missing directories are dropped and duplicates keep their first rank.
    """

    def __init__(self, directories: Iterable[Pathlike]):
        self.directories: list[Path] = []
        seen = set()
        for directory in directories:
            path = Path(os.path.normpath(os.path.abspath(directory)))
            if path in seen or not path.is_dir():
                continue
            seen.add(path)
            self.directories.append(path)

    @classmethod
    def default(
        cls,
        exec_dir: Pathlike,
        extra: Iterable[Pathlike] = (),
        env: Mapping[str, str] | None = None,
        system: Iterable[str] = DEFAULT_SEARCH_PATHS,
    ) -> "SearchPaths":
        """Build the standard ranking around an executable's directory.

        Order: the executable directory and its neighbouring library
        directories, extra directories, DYLD_* environment entries, then
        the well-known install prefixes (glob patterns are expanded and
        sorted).
        """
        env = os.environ if env is None else env
        exec_dir = Path(exec_dir)
        directories: list[Pathlike] = [
            exec_dir,
            exec_dir / ".." / "Frameworks",
            exec_dir / "lib",
            exec_dir / ".." / "lib",
        ]
        directories.extend(extra)
        for var in SEARCH_PATH_ENV_VARS:
            directories.extend(p for p in env.get(var, "").split(":") if p)
        for pattern in system:
            if glob.has_magic(pattern):
                directories.extend(sorted(glob.glob(pattern)))
            else:
                directories.append(pattern)
        return cls(directories)

    def __iter__(self) -> Iterator[Path]:
        return iter(self.directories)

    def __len__(self) -> int:
        return len(self.directories)

    def find(self, name: str) -> Path | None:
        """Return the first directory's file called name."""
        return _first_existing(self.directories, [name])


class PathResolver:
    """Resolves raw references to files on disk.

    First match in declared order wins: there is no scoring.

    Args:
        enumerator: Source of each referencing binary's rpaths and id
        search_paths: Ranked fallback directories
        exec_dir: Directory of the original executable, substituted for
            @executable_path
    """

    def __init__(
        self,
        enumerator: DependencyEnumerator,
        search_paths: SearchPaths,
        exec_dir: Pathlike,
    ):
        self.enumerator = enumerator
        self.search_paths = search_paths
        self.exec_dir = Path(os.path.abspath(exec_dir))
        self.log = logging.getLogger(self.__class__.__name__)

    def substitute(self, path: str, binary: Path) -> str:
        """Replace loader and executable tokens in path."""
        loader_dir = str(Path(os.path.abspath(binary)).parent)
        path = path.replace(LOADER_TOKEN, loader_dir, 1)
        return path.replace(EXECUTABLE_TOKEN, str(self.exec_dir), 1)

    def rpath_directories(self, binary: Path) -> list[Path]:
        """Candidate directories for an @rpath reference made by binary."""
        commands = self.enumerator.load(binary)
        directories = [
            Path(self.substitute(rpath, binary))
            for rpath in commands.rpaths
            if not rpath.startswith(RPATH_TOKEN)
        ]
        if commands.install_id and commands.install_id.startswith("/"):
            directories.append(Path(commands.install_id).parent)
        directories.extend(self.search_paths)
        return directories

    def resolve(self, binary: Path, ref: BinaryRef) -> Path | None:
        """Resolve ref, as referenced by binary, to an existing file.

        Args:
            binary: The binary containing the reference
            ref: The reference to resolve

        Returns:
            The absolute path of the library, or None if nothing matches
        """
        binary = Path(os.path.abspath(binary))
        resolved: Path | None = None

        if ref.kind is RefKind.ABSOLUTE:
            path = Path(ref.raw)
            resolved = path if path.is_file() else None

        elif ref.kind is RefKind.RPATH:
            resolved = _first_existing(
                self.rpath_directories(binary), [ref.subpath, ref.name]
            )

        elif ref.kind in (RefKind.LOADER, RefKind.EXECUTABLE):
            if not ref.raw.startswith(EXECUTABLE_LIB_PREFIX):
                path = Path(self.substitute(ref.raw, binary))
                if path.is_file():
                    resolved = path
            if resolved is None:
                resolved = self.search_paths.find(ref.name)

        else:
            path = binary.parent / ref.subpath
            resolved = path if path.is_file() else self.search_paths.find(ref.name)

        if resolved is None:
            self.log.debug("unresolved %s (from %s)", ref, binary)
            return None
        resolved = Path(os.path.normpath(os.path.abspath(resolved)))
        self.log.debug("resolved %s -> %s", ref, resolved)
        return resolved


# ----------------------------------------------------------------------------
# Closure walk


class ClosureRegistry:
    """The flat, basename-keyed set of libraries copied into a bundle.

    "Copied" (members) and "processed" (visited) are separate states: a
    library can be copied before its own dependencies are enumerated.

    Args:
        libs_dir: The bundle's library directory
    """

    def __init__(self, libs_dir: Pathlike):
        self.libs_dir = Path(libs_dir)
        self.members: dict[str, Path] = {}
        self.origins: dict[str, Path] = {}
        self.visited: set[Path] = set()
        self.missing: set[str] = set()
        self.log = logging.getLogger(self.__class__.__name__)

    def __contains__(self, name: str) -> bool:
        return name in self.members

    def __len__(self) -> int:
        return len(self.members)

    def names(self) -> list[str]:
        """Sorted basenames of the copied libraries."""
        return sorted(self.members)

    def libraries(self) -> list[Path]:
        """Bundle copies of all members, sorted by name."""
        return [self.members[name] for name in self.names()]

    def add(self, name: str, source: Path) -> Path:
        """Copy source into the library directory as name.

        The copy is made user-writable so its load commands can be
        rewritten later.

        Raises:
            FileError: If the copy fails
        """
        dest = self.libs_dir / name
        try:
            shutil.copy2(source, dest)
            dest.chmod(dest.stat().st_mode | stat.S_IWUSR)
        except OSError as e:
            raise FileError(f"Failed to copy {source} to {dest}: {e}") from e
        self.members[name] = dest
        self.origins[name] = source
        self.log.info("copied %s from %s", name, source.parent)
        return dest

    def mark_visited(self, binary: Path) -> None:
        self.visited.add(Path(os.path.abspath(binary)))

    def is_visited(self, binary: Path) -> bool:
        return Path(os.path.abspath(binary)) in self.visited

    def unvisited(self) -> list[Path]:
        """Sources of members whose dependencies were never enumerated."""
        return [
            self.origins[name]
            for name in self.names()
            if not self.is_visited(self.origins[name])
        ]

    def record_missing(self, ref: BinaryRef) -> None:
        self.missing.add(ref.raw)

    def missing_names(self) -> list[str]:
        """Sorted, de-duplicated basenames of unresolved references."""
        return sorted({os.path.basename(raw) for raw in self.missing})


class ClosureWalker:
    """Copies the transitive library closure of a binary into a registry.

    The traversal is depth-first, driven by an explicit stack of
    (binary, pending references) frames. Missing references are recorded
    and the walk continues, so one run reports all of them.

    Args:
        enumerator: Lists each binary's direct references
        resolver: Resolves references to files
        registry: Receives copied libraries and walk state
    """

    def __init__(
        self,
        enumerator: DependencyEnumerator,
        resolver: PathResolver,
        registry: ClosureRegistry,
    ):
        self.enumerator = enumerator
        self.resolver = resolver
        self.registry = registry
        self.log = logging.getLogger(self.__class__.__name__)

    def walk(self, root: Path) -> ClosureRegistry:
        """Walk root's closure, then sweep members left unprocessed.

        Returns:
            The registry (check ``registry.missing`` for failures)

        Raises:
            EnumerationError: If any binary cannot be read
            ValidationError: If a resolved library is not a valid binary
            FileError: If a library cannot be copied into the bundle
        """
        self._walk_from(Path(os.path.abspath(root)))

        pending = self.registry.unvisited()
        while pending:
            for source in pending:
                if not self.registry.is_visited(source):
                    self.log.debug("sweeping %s", source)
                    self._walk_from(source)
            pending = self.registry.unvisited()

        return self.registry

    def _walk_from(self, start: Path) -> None:
        registry = self.registry
        registry.mark_visited(start)
        stack = [(start, iter(self.enumerator.dependencies(start)))]

        while stack:
            binary, refs = stack[-1]
            ref = next(refs, None)
            if ref is None:
                stack.pop()
                continue

            if ref.name in registry:
                continue

            resolved = self.resolver.resolve(binary, ref)
            if resolved is None:
                self.log.warning("missing %s (needed by %s)", ref, binary.name)
                registry.record_missing(ref)
                continue

            self.enumerator.toolchain.check_binary(resolved)
            registry.add(ref.name, resolved)
            if not registry.is_visited(resolved):
                registry.mark_visited(resolved)
                stack.append(
                    (resolved, iter(self.enumerator.dependencies(resolved)))
                )


# ----------------------------------------------------------------------------
# Rewriting and signing


class ReferenceRewriter:
    """Points every bundled binary at its siblings through relative tokens.

    Args:
        toolchain: Reads and rewrites load commands
        registry: The completed closure
        excluded_prefixes: References under these prefixes are left alone
    """

    def __init__(
        self,
        toolchain: Toolchain,
        registry: ClosureRegistry,
        excluded_prefixes: Iterable[str] = SYSTEM_PREFIXES,
    ):
        self.toolchain = toolchain
        self.registry = registry
        self.excluded_prefixes = tuple(excluded_prefixes)
        self.log = logging.getLogger(self.__class__.__name__)

    def _change(self, binary: Path, old: str, new: str) -> None:
        if old == new:
            return
        self.log.debug("%s: %s -> %s", binary.name, old, new)
        try:
            self.toolchain.change_reference(binary, old, new)
        except CommandError as e:
            raise RewriteError(
                f"Failed to change {old} in {binary}: {e}"
            ) from e

    def rewrite_executable(self, executable: Path) -> None:
        """Point the executable at ``@executable_path/../libs/<name>``."""
        self.log.info("Fixing dependencies on %s", executable)
        references = [
            raw
            for raw in self.toolchain.inspect(executable).dependencies
            if not BinaryRef.parse(raw).is_system(self.excluded_prefixes)
        ]
        for name, lib in zip(self.registry.names(), self.registry.libraries()):
            install_id = self.toolchain.inspect(lib).install_id
            if install_id in references:
                match = install_id
            else:
                match = next(
                    (r for r in references if os.path.basename(r) == name),
                    None,
                )
            if match is None:
                continue
            self._change(executable, match, EXECUTABLE_LIB_PREFIX + name)

    def rewrite_library(self, lib: Path) -> None:
        """Point a library at its siblings and make its id loader-relative."""
        self.log.info("Fixing dependencies on %s", lib.name)
        commands = self.toolchain.inspect(lib)
        for raw in commands.dependencies:
            if raw == commands.install_id:
                continue
            ref = BinaryRef.parse(raw)
            if ref.is_system(self.excluded_prefixes):
                continue
            if ref.name in self.registry:
                self._change(lib, raw, LOADER_LIB_PREFIX + ref.name)

        new_id = LOADER_LIB_PREFIX + lib.name
        try:
            self.toolchain.change_id(lib, new_id)
        except CommandError as e:
            raise RewriteError(
                f"Failed to change identity of library {lib}: {e}"
            ) from e

    def rewrite_all(self, executable: Path) -> None:
        self.rewrite_executable(executable)
        for lib in self.registry.libraries():
            self.rewrite_library(lib)


class Signer:
    """Re-signs rewritten binaries; any failure aborts the run."""

    def __init__(self, toolchain: Toolchain):
        self.toolchain = toolchain
        self.log = logging.getLogger(self.__class__.__name__)

    def sign(self, binary: Path) -> None:
        self.log.info("codesign %s", binary)
        try:
            self.toolchain.sign(binary)
        except CommandError as e:
            raise SignError(f"Failed to sign {binary}: {e}") from e

    def sign_all(self, executable: Path, libraries: Iterable[Path]) -> None:
        """Sign the libraries, then the executable."""
        for lib in libraries:
            self.sign(lib)
        self.sign(executable)


# ----------------------------------------------------------------------------
# Bundle layout


class BundleFolder:
    """Manages a folder within the bundle structure."""

    def __init__(self, path: Pathlike):
        self.path = Path(path)

    def reset(self) -> None:
        """Delete the folder and recreate it empty with a keep marker.

        Raises:
            FileError: If the folder cannot be removed or created
        """
        try:
            if self.path.exists():
                shutil.rmtree(self.path)
            self.path.mkdir(parents=True)
            (self.path / KEEP_FILE).touch()
        except OSError as e:
            raise FileError(f"Failed to reset {self.path}: {e}") from e

    def files(self) -> list[Path]:
        """Sorted regular files, excluding hidden ones."""
        if not self.path.is_dir():
            return []
        return sorted(
            p
            for p in self.path.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )


class BundleLayout:
    """The ``bin/``, ``libs/`` and ``etc/`` layout of an output bundle."""

    def __init__(self, root: Pathlike):
        self.root = Path(root)
        self.bin = BundleFolder(self.root / BIN_DIR)
        self.libs = BundleFolder(self.root / LIBS_DIR)
        self.etc = BundleFolder(self.root / ETC_DIR)
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def data_dir(self) -> Path:
        return self.etc.path / DATA_DIR

    def prepare(self) -> None:
        """Remove any previous output; the bundle is always rebuilt."""
        self.log.info("Preparing bundle directory %s", self.root)
        for folder in (self.bin, self.libs, self.etc):
            folder.reset()

    def install_executable(self, source: Path) -> Path:
        """Copy the executable into ``bin/`` and keep it executable."""
        dest = self.bin.path / source.name
        try:
            shutil.copy2(source, dest)
            mode = dest.stat().st_mode
            dest.chmod(
                mode | stat.S_IWUSR | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
            )
        except OSError as e:
            raise FileError(f"Failed to copy {source} to {dest}: {e}") from e
        return dest


# ----------------------------------------------------------------------------
# Pipeline


@dataclass
class BundleResult:
    """What a successful build produced."""

    root: Path
    executable: Path
    libraries: list[Path] = field(default_factory=list)


class BundleBuilder:
    """Builds a relocatable bundle from a build output directory.

    Args:
        source_dir: Directory containing the built executable
        executable: Name of the executable inside source_dir
        bundle_dir: Output bundle directory (its bin/libs/etc are rebuilt)
        toolchain: Platform toolchain (default: otool-based)
        search_paths: Extra directories ranked after the executable's own
        excluded_prefixes: Extra library prefixes never bundled
        system_search_paths: Well-known install prefixes searched last
        codesign: Whether to re-sign binaries after rewriting

    Example:
        builder = BundleBuilder("build", "carta_backend", "backend")
        result = builder.build()
    """

    def __init__(
        self,
        source_dir: Pathlike,
        executable: str,
        bundle_dir: Pathlike,
        toolchain: Toolchain | None = None,
        search_paths: Iterable[Pathlike] = (),
        excluded_prefixes: Iterable[str] = (),
        codesign: bool = True,
        system_search_paths: Iterable[str] = DEFAULT_SEARCH_PATHS,
    ):
        self.source_dir = Path(source_dir)
        self.executable_name = executable
        self.layout = BundleLayout(bundle_dir)
        self.toolchain = toolchain or make_toolchain()
        self.extra_search_paths = list(search_paths)
        self.excluded_prefixes = SYSTEM_PREFIXES + tuple(excluded_prefixes)
        self.codesign = codesign
        self.system_search_paths = tuple(system_search_paths)
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def source_executable(self) -> Path:
        return self.source_dir / self.executable_name

    def validate(self) -> None:
        """Check inputs before anything is written.

        Raises:
            ValidationError: If the source directory or executable is bad
        """
        if not self.executable_name or os.sep in self.executable_name:
            raise ValidationError(
                f"Invalid executable name: '{self.executable_name}'"
            )
        if not self.source_dir.is_dir():
            raise ValidationError(
                f"Source directory does not exist: {self.source_dir}"
            )
        validate_file(self.source_executable, check_executable=True)

    def collect(self) -> ClosureRegistry:
        """Copy the executable's library closure into ``libs/``.

        Raises:
            MissingDependencyError: If any reference stayed unresolved
        """
        source = Path(os.path.abspath(self.source_executable))
        enumerator = DependencyEnumerator(self.toolchain, self.excluded_prefixes)
        search_paths = SearchPaths.default(
            source.parent,
            extra=self.extra_search_paths,
            system=self.system_search_paths,
        )
        self.log.debug(
            "search paths: %s", ", ".join(str(p) for p in search_paths)
        )
        resolver = PathResolver(enumerator, search_paths, source.parent)
        registry = ClosureRegistry(self.layout.libs.path)

        ClosureWalker(enumerator, resolver, registry).walk(source)

        missing = registry.missing_names()
        if missing:
            self.log.error("Missing dependencies:")
            for name in missing:
                self.log.error("    %s", name)
            raise MissingDependencyError(missing)

        self.log.info("All libs copied (%d)", len(registry))
        return registry

    def build(self) -> BundleResult:
        """Run the whole pipeline.

        Returns:
            The bundle root, executable and library paths
        """
        self.validate()
        self.layout.prepare()

        self.log.info("Copying %s", self.executable_name)
        executable = self.layout.install_executable(self.source_executable)

        registry = self.collect()

        self.log.info("Updating library paths")
        ReferenceRewriter(
            self.toolchain, registry, self.excluded_prefixes
        ).rewrite_all(executable)

        if self.codesign:
            Signer(self.toolchain).sign_all(executable, registry.libraries())

        self.log.info("Bundle created successfully: %s", self.layout.root)
        return BundleResult(
            self.layout.root, executable, registry.libraries()
        )


# ----------------------------------------------------------------------------
# Auxiliary data


def fetch_data(url: str, etc_dir: Pathlike) -> Path:
    """Download a tar archive and extract it into ``<etc_dir>/data``.

    Args:
        url: Archive URL (any scheme urllib supports, including file:)
        etc_dir: The bundle's etc directory

    Returns:
        The data directory

    Raises:
        FetchError: If the download or extraction fails
    """
    log = logging.getLogger("relocbundle")
    data_dir = Path(etc_dir) / DATA_DIR
    archive_name = Path(urllib.parse.urlparse(url).path).name or "data.tar"

    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FetchError(f"Cannot create {data_dir}: {e}") from e

    archive = data_dir / archive_name
    log.info("Downloading %s", url)
    try:
        urllib.request.urlretrieve(url, archive)
        with tarfile.open(archive, "r:*") as tar:
            tar.extractall(data_dir, filter="data")
    # TypeError: interpreters without tar extraction filters
    except (OSError, ValueError, TypeError, tarfile.TarError) as e:
        raise FetchError(f"Failed to fetch {url}: {e}") from e
    finally:
        archive.unlink(missing_ok=True)

    log.info("Extracted data into %s", data_dir)
    return data_dir


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="path to a TOML config file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _add_inspector_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--inspector",
        choices=sorted(TOOLCHAINS),
        help=f"how load commands are read (default: {DEFAULT_INSPECTOR})",
    )


def _load_args_config(args: argparse.Namespace) -> dict[str, object]:
    if args.config:
        return load_config(Path(args.config))
    return get_config()


def _cmd_bundle(args: argparse.Namespace) -> None:
    """Handle 'bundle' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("relocbundle")
    config = _load_args_config(args)

    executable = args.name or get_config_value(config, "bundle", "executable")
    if not executable:
        raise ConfigurationError(
            "No executable name (use --name or [bundle] executable)"
        )
    output = args.output or get_config_value(
        config, "bundle", "output", DEFAULT_OUTPUT_DIR
    )
    inspector = args.inspector or get_config_value(
        config, "bundle", "inspector", DEFAULT_INSPECTOR
    )
    identity = args.identity or get_config_value(
        config, "bundle", "sign_identity"
    )
    data_url = args.data_url or get_config_value(
        config, "bundle", "data_url", DEFAULT_DATA_URL
    )

    builder = BundleBuilder(
        source_dir=Path(args.source),
        executable=executable,
        bundle_dir=Path(output),
        toolchain=make_toolchain(inspector, identity),
        search_paths=args.search
        or get_config_list(config, "bundle", "search_paths"),
        excluded_prefixes=args.exclude
        or get_config_list(config, "bundle", "exclude"),
        codesign=not args.no_sign,
    )
    result = builder.build()
    log.info("Created: %s (%d libraries)", result.root, len(result.libraries))

    if not args.no_data:
        fetch_data(data_url, builder.layout.etc.path)


def _cmd_deps(args: argparse.Namespace) -> None:
    """Handle 'deps' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    config = _load_args_config(args)
    inspector = args.inspector or get_config_value(
        config, "bundle", "inspector", DEFAULT_INSPECTOR
    )

    binary = Path(args.binary)
    enumerator = DependencyEnumerator(
        make_toolchain(inspector),
        SYSTEM_PREFIXES + tuple(get_config_list(config, "bundle", "exclude")),
    )
    commands = enumerator.load(binary)
    print(f"{binary}:")
    print(f"  id: {commands.install_id or '-'}")
    for rpath in commands.rpaths:
        print(f"  rpath: {rpath}")
    for ref in enumerator.dependencies(binary):
        print(f"  {ref.kind.value}: {ref.raw}")


def _cmd_fetch(args: argparse.Namespace) -> None:
    """Handle 'fetch' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    config = _load_args_config(args)
    data_url = args.data_url or get_config_value(
        config, "bundle", "data_url", DEFAULT_DATA_URL
    )
    fetch_data(data_url, Path(args.etc_dir))


def main() -> None:
    """Command line interface for relocbundle."""
    try:
        parser = argparse.ArgumentParser(
            prog="relocbundle",
            description="Build self-contained, relocatable bundles of "
            "executables and their shared libraries.",
            epilog=(
                "Examples:\n"
                "  relocbundle bundle build/ -n carta_backend -o backend/\n"
                "  relocbundle deps build/carta_backend\n"
                "  relocbundle fetch backend/etc\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version", action="version", version=f"%(prog)s {__version__}"
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- bundle subcommand ---
        bundle_parser = subparsers.add_parser(
            "bundle",
            help="bundle an executable and its library closure",
            description="Copy an executable and every library it needs into "
            "bin/ and libs/, rewrite references, re-sign, fetch etc/data.",
            epilog=(
                "Examples:\n"
                "  relocbundle bundle build/ -n carta_backend\n"
                "  relocbundle bundle build/ -n main -o out/ -s /opt/casa/lib\n"
                "  relocbundle bundle build/ -n main --no-sign --no-data\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        bundle_parser.add_argument(
            "source",
            help="directory containing the built executable",
        )
        bundle_parser.add_argument(
            "-n",
            "--name",
            metavar="NAME",
            help="executable name inside SOURCE",
        )
        bundle_parser.add_argument(
            "-o",
            "--output",
            metavar="DIR",
            help=f"bundle directory (default: {DEFAULT_OUTPUT_DIR})",
        )
        bundle_parser.add_argument(
            "-s",
            "--search",
            action="append",
            metavar="DIR",
            help="additional library search path (repeatable)",
        )
        bundle_parser.add_argument(
            "-x",
            "--exclude",
            action="append",
            metavar="PREFIX",
            help="never bundle libraries under PREFIX (repeatable)",
        )
        bundle_parser.add_argument(
            "--identity",
            metavar="ID",
            help=f"codesign identity (or set {ENV_SIGN_IDENTITY}; default: ad-hoc)",
        )
        bundle_parser.add_argument(
            "--no-sign",
            action="store_true",
            help="skip re-signing",
        )
        bundle_parser.add_argument(
            "--data-url",
            metavar="URL",
            help="auxiliary data archive extracted into etc/data",
        )
        bundle_parser.add_argument(
            "--no-data",
            action="store_true",
            help="skip the auxiliary data download",
        )
        _add_inspector_option(bundle_parser)
        _add_common_options(bundle_parser)
        bundle_parser.set_defaults(func=_cmd_bundle)

        # --- deps subcommand ---
        deps_parser = subparsers.add_parser(
            "deps",
            help="show the library references of a binary",
            description="Print the id, rpaths and non-system library "
            "references of a binary.",
        )
        deps_parser.add_argument("binary", help="executable or library")
        _add_inspector_option(deps_parser)
        _add_common_options(deps_parser)
        deps_parser.set_defaults(func=_cmd_deps)

        # --- fetch subcommand ---
        fetch_parser = subparsers.add_parser(
            "fetch",
            help="download the auxiliary data archive",
            description="Download and extract the data archive into "
            "ETC_DIR/data.",
        )
        fetch_parser.add_argument("etc_dir", help="the bundle's etc directory")
        fetch_parser.add_argument(
            "--data-url",
            metavar="URL",
            help=f"archive URL (default: {DEFAULT_DATA_URL})",
        )
        _add_common_options(fetch_parser)
        fetch_parser.set_defaults(func=_cmd_fetch)

        args = parser.parse_args()
        args.func(args)

    except BundlerError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
