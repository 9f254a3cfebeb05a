import tempfile, yaml, json, os, time, logging
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union
from pathlib import Path
from panopticon.recovery import CorruptionError, FileOperationError, FatalError, PersistenceError

DATA_YAML = 0
DATA_JSON = 1

T = TypeVar("T")

_default_log = logging.getLogger("panopticon.io")

def _cleanup(temp_path: Optional[str], log: logging.Logger):
    if temp_path is not None and os.path.exists(temp_path):
        try:
            os.unlink(temp_path)
            log.debug(f"Cleaned up temporary file: {temp_path}")
        except OSError as cleanup_error:
            # Don't mask the original error, just log
            log.warning(f"Could not clean up temp file {temp_path}: {cleanup_error}")

def _create_dirs(file_path: Path, log: logging.Logger):
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
    except (OSError, PermissionError) as e:
        error_msg = f"Cannot create directory {file_path.parent}: {e}"
        log.error(error_msg)
        raise FileOperationError(error_msg) from e

def atomic_write(data_type: int, file_path: Union[Path, str], data: Union[Dict[str, Any], str],
                 create_dirs: bool = False, log: logging.Logger = _default_log) -> bool:
    """
    Serialize and save data to a file using atomic updates.

    ``data`` is either a dict serialized as YAML/JSON or an already encoded
    JSON string.
    """
    file_path = Path(file_path)
    temp_path = None

    try:
        if create_dirs:
            _create_dirs(file_path, log)

        # Temporary file in the same directory as the target for atomicity
        with tempfile.NamedTemporaryFile(mode='w', encoding='utf-8', dir=file_path.parent, prefix=f".{file_path.name}.", suffix='.tmp', delete=False) as temp_file:
            temp_path = temp_file.name
            if data_type == DATA_YAML:
                yaml.safe_dump(data, temp_file, default_flow_style=False, sort_keys=False, indent=2, allow_unicode=True)
            elif data_type == DATA_JSON:
                if isinstance(data, str):
                    temp_file.write(data)
                else:
                    json.dump(data, temp_file, indent=2, ensure_ascii=False)
            else:
                raise FatalError("Unsupported Data Format")
            temp_file.flush()
            os.fsync(temp_file.fileno())

        # Atomic replace - this either completely succeeds or completely fails
        os.replace(temp_path, file_path)
        log.debug(f"Successfully saved file: {file_path}")
        return True

    except (yaml.YAMLError, TypeError) as e:
        _cleanup(temp_path, log)
        # FATAL ERROR: Data cannot be serialized
        error_msg = (f"Data serialization failed for {file_path}. "
                    f"In-memory data may be corrupt or contain non-serializable types: {e}")
        log.critical(error_msg)
        raise FatalError(error_msg) from e

    except FileOperationError:
        raise

    except (IOError, OSError, PermissionError) as e:
        _cleanup(temp_path, log)
        # RECOVERABLE ERROR: I/O issues
        error_msg = f"I/O error saving file {file_path}: {e}"
        log.error(error_msg)
        raise FileOperationError(error_msg) from e

def append_lines(file_path: Union[Path, str], lines: List[str], log: logging.Logger = _default_log) -> None:
    """
    Append newline-terminated lines and fsync before returning.

    On failure the file is truncated back to its previous length so no
    partial line survives, then FileOperationError is raised. If that
    rollback fails too, PersistenceError is raised so the append is not
    retried on top of the leftover bytes.
    """
    file_path = Path(file_path)
    _create_dirs(file_path, log)
    original_size = file_path.stat().st_size if file_path.exists() else 0
    data = "".join(line + "\n" for line in lines).encode("utf-8")

    try:
        with open(file_path, 'ab') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except (IOError, OSError) as e:
        try:
            if file_path.exists() and file_path.stat().st_size > original_size:
                os.truncate(file_path, original_size)
        except OSError as truncate_error:
            # A retry would append after the leftover bytes
            error_msg = f"Could not roll back partial append to {file_path}: {truncate_error}"
            log.critical(error_msg)
            raise PersistenceError(error_msg) from e
        error_msg = f"I/O error appending to {file_path}: {e}"
        log.error(error_msg)
        raise FileOperationError(error_msg) from e

def read_lines(file_path: Union[Path, str]) -> List[bytes]:
    """
    Read a newline-delimited file as raw lines.

    Decoding is left to the caller so one undecodable line cannot hide the
    rest of the file. Returns an empty list if the file does not exist.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        return []

    try:
        with open(file_path, 'rb') as f:
            content = f.read()
    except (IOError, OSError, PermissionError) as e:
        raise FileOperationError(f"Failed to read file {file_path}: {e}") from e
    return content.split(b"\n")

def truncate(file_path: Union[Path, str]) -> None:
    file_path = Path(file_path)
    try:
        with open(file_path, 'w', encoding='utf-8'):
            pass
    except (IOError, OSError) as e:
        raise FileOperationError(f"Failed to truncate {file_path}: {e}") from e

def with_retry(operation: Callable[[], T], attempts: int, delay: float,
               log: logging.Logger = _default_log, what: str = "write") -> T:
    """
    Run a file operation, retrying FileOperationError with exponential backoff.

    Raises:
        PersistenceError: every attempt failed.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except FileOperationError as e:
            if attempt == attempts:
                log.error(f"{what} failed after {attempts} attempt(s): {e}")
                raise PersistenceError(f"{what} failed after {attempts} attempt(s): {e}") from e
            wait = delay * (2 ** (attempt - 1))
            log.warning(f"{what} failed (attempt {attempt}/{attempts}), retrying in {wait:.3f}s: {e}")
            time.sleep(wait)

def load_json_file(file_path: Union[Path, str]) -> Union[None, Dict]:
    """
    Load and parse a JSON file.

    Args:
        file_path: Path to the JSON file

    Returns:
        Parsed data as dict, or None if the file doesn't exist
    """
    file_path = Path(file_path)
    if not file_path.exists():
        return None

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        # Syntax errors mean the file is corrupted
        raise CorruptionError(f"JSON syntax error in {file_path}: {e}") from e
    except (IOError, OSError, PermissionError) as e:
        # I/O errors are recoverable
        raise FileOperationError(f"Failed to read file {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise CorruptionError(f"File {file_path} contains invalid data structure")
    return data
