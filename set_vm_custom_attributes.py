#!/usr/bin/env python3
"""
Description: Ensure vCenter custom attributes exist and apply their values to
             virtual machines from a CSV/Excel table, optionally in report-only mode
"""

import argparse
import logging
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from importlib import metadata
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

try:
    from pyVim.connect import SmartConnect, Disconnect
    from pyVmomi import vim
    from defusedxml import ElementTree
    import pandas as pd
    import urllib3
except ImportError as e:
    print(f"Error: Missing required package ({e.name}). Please install dependencies:")
    print("  pip install pyvmomi pandas openpyxl defusedxml urllib3")
    sys.exit(1)

# Disable SSL warnings
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

CREDENTIAL_FILE_NAME = "credential_file.xml"
DEFAULT_KEY_COLUMN = "Server Name"

LOG_FORMAT = "%(asctime)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MIN_PYTHON = (3, 8)
MIN_PANDAS = "1.3"
MIN_PYVMOMI = "8.0"

logger = logging.getLogger("vm_custom_attributes")


class AttributeSyncError(Exception):
    """Base class for errors that abort the run"""


class PreflightError(AttributeSyncError):
    """A runtime or library prerequisite is not met"""


class InputFileError(AttributeSyncError):
    """The input table could not be selected or parsed"""


class CredentialError(AttributeSyncError):
    """The credential file could not be loaded"""


class SessionError(AttributeSyncError):
    """The vCenter session could not be established or used"""


class RunMode(Enum):
    APPLY = "apply"
    REPORT = "report"


class AttributeStatus(Enum):
    EXISTS = "exists"
    CREATED = "created"
    WOULD_CREATE = "would_create"
    FAILED = "failed"


class RowStatus(Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED_NO_KEY = "skipped_no_key"
    VM_NOT_FOUND = "vm_not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class InputRow:
    """One data row of the input table"""

    line: int
    key: str
    values: Dict[str, str]


@dataclass
class InputTable:
    """Input table with its header parsed once into ordered attribute names"""

    key_column: str
    attribute_names: Tuple[str, ...]
    rows: List[InputRow] = field(default_factory=list)


@dataclass
class Credential:
    username: str
    password: str = field(repr=False)


@dataclass
class AttributeResult:
    name: str
    status: AttributeStatus
    message: str = ""


@dataclass
class RowResult:
    line: int
    vm_name: str
    status: RowStatus
    changes: List[Tuple[str, str]] = field(default_factory=list)
    message: str = ""


def setup_logging(verbose: bool = False) -> None:
    """Attach the console handler; the log file is added once the input directory is known"""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logger.addHandler(console_handler)


def attach_log_file(log_dir: Path) -> Path:
    """Add a timestamped log file in log_dir mirroring everything sent to the console"""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_filename = Path(log_dir) / f"log_file_{timestamp}.log"

    file_handler = logging.FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logger.addHandler(file_handler)

    logger.info(f"Log file: {log_filename}")
    return log_filename


def _version_tuple(version: str) -> Tuple[int, ...]:
    """Leading numeric components of a version string, '8.0.1.0.post1' -> (8, 0, 1, 0)"""
    parts = []
    for part in version.split("."):
        matched = re.match(r"\d+", part)
        if not matched:
            break
        parts.append(int(matched.group(0)))
    return tuple(parts)


def check_python_version(version_info: Sequence[int] = sys.version_info) -> str:
    found = ".".join(str(part) for part in version_info[:3])
    if tuple(version_info[:2]) < MIN_PYTHON:
        required = ".".join(str(part) for part in MIN_PYTHON)
        raise PreflightError(f"Python {required} or higher is required, found {found}")
    return found


def check_package_version(distribution: str, minimum: str) -> str:
    """Return the installed version of distribution, raising PreflightError if it is too old"""
    try:
        installed = metadata.version(distribution)
    except metadata.PackageNotFoundError:
        raise PreflightError(f"{distribution} {minimum} or higher is required, but it is not installed") from None

    if _version_tuple(installed) < _version_tuple(minimum):
        raise PreflightError(f"{distribution} {minimum} or higher is required, found {installed}")
    return installed


def run_preflight_checks() -> None:
    python_version = check_python_version()
    logger.debug(f"Python version OK: {python_version}")
    pandas_version = check_package_version("pandas", MIN_PANDAS)
    logger.debug(f"pandas version OK: {pandas_version}")
    pyvmomi_version = check_package_version("pyvmomi", MIN_PYVMOMI)
    logger.debug(f"pyvmomi version OK: {pyvmomi_version}")


def _ask_for_input_file() -> str:
    import tkinter
    from tkinter import filedialog

    try:
        root = tkinter.Tk()
    except tkinter.TclError as e:
        raise InputFileError(f"Could not open the file dialog ({e}). Use --input instead.") from e

    root.withdraw()
    try:
        return filedialog.askopenfilename(
            title="Select the custom attribute input file",
            filetypes=[("CSV files", "*.csv"), ("Excel files", "*.xlsx")],
        )
    finally:
        root.destroy()


def select_input_file(path: Optional[str] = None) -> Path:
    """Return the input table path, asking with a file dialog when none is given"""
    if not path:
        path = _ask_for_input_file()
    if not path:
        raise InputFileError("No input file selected")

    input_path = Path(path).expanduser().resolve()
    if not input_path.is_file():
        raise InputFileError(f"Input file '{input_path}' does not exist")
    return input_path


def _read_frame(path: Path) -> "pd.DataFrame":
    if path.suffix.lower() == ".xlsx":
        frame = pd.read_excel(path, header=None, dtype=str, keep_default_na=False)
    else:
        frame = pd.read_csv(path, header=None, dtype=str, keep_default_na=False, encoding="utf-8-sig")
    return frame.fillna("")


def load_input_table(path: Path, key_column: str = DEFAULT_KEY_COLUMN) -> InputTable:
    """
    Parse the input table. The first row is the header: key_column names the VM,
    every other column is a custom attribute name. Raises InputFileError.
    """
    logger.info(f"Reading input file {path}")
    try:
        frame = _read_frame(path)
    except Exception as e:
        raise InputFileError(f"Could not parse input file '{path}': {str(e)}") from e

    if frame.empty:
        raise InputFileError(f"Input file '{path}' is empty")

    header = [str(cell).strip() for cell in frame.iloc[0]]
    if any(not name for name in header):
        raise InputFileError(f"Input file '{path}' has an empty column name in its header")

    duplicates = sorted({name for name in header if header.count(name) > 1})
    if duplicates:
        raise InputFileError(f"Input file '{path}' has duplicate columns: {', '.join(duplicates)}")

    if key_column not in header:
        raise InputFileError(f"Input file '{path}' has no '{key_column}' column")

    attribute_names = tuple(name for name in header if name != key_column)
    table = InputTable(key_column=key_column, attribute_names=attribute_names)

    for line, cells in enumerate(frame.iloc[1:].itertuples(index=False, name=None), start=1):
        record = dict(zip(header, cells))
        table.rows.append(InputRow(
            line=line,
            key=record[key_column].strip(),
            values={name: record[name] for name in attribute_names},
        ))

    logger.info(f"Loaded {len(table.rows)} row(s) with {len(attribute_names)} custom attribute column(s)")
    logger.debug(f"Custom attribute columns: {list(attribute_names)}")
    return table


def _decrypt_secure_string(blob_hex: str) -> str:
    """Decrypt a PowerShell SecureString exported with DPAPI"""
    if sys.platform != "win32":
        raise CredentialError("Encrypted passwords can only be decrypted on Windows by the user that exported them")

    import win32crypt

    try:
        _, data = win32crypt.CryptUnprotectData(bytes.fromhex(blob_hex), None, None, None, 0)
    except Exception as e:
        raise CredentialError(f"Could not decrypt the stored password: {str(e)}") from e
    return data.decode("utf-16-le")


def load_credential(path: Path) -> Credential:
    """
    Load a PSCredential saved with PowerShell Export-Clixml.

    The user name is read from <S N="UserName">, the password from
    <SS N="Password"> (DPAPI encrypted) or a plain <S N="Password">.
    """
    if not path.is_file():
        raise CredentialError(f"Credential file '{path}' not found")

    try:
        tree = ElementTree.parse(str(path))
    except (ElementTree.ParseError, ValueError) as e:
        raise CredentialError(f"Could not parse credential file '{path}': {str(e)}") from e

    username = None
    password = None
    for element in tree.iter():
        tag = element.tag.rsplit("}", 1)[-1]
        prop = element.get("N")
        if prop == "UserName" and tag == "S":
            username = (element.text or "").strip()
        elif prop == "Password" and tag == "SS":
            password = _decrypt_secure_string((element.text or "").strip())
        elif prop == "Password" and tag == "S":
            password = element.text or ""

    if not username:
        raise CredentialError(f"Credential file '{path}' has no user name")
    if not password:
        raise CredentialError(f"Credential file '{path}' has no password")

    logger.info(f"Loaded credential for user {username}")
    return Credential(username=username, password=password)


class VCenterSession:
    """Single vCenter connection used by every remote operation of a run"""

    def __init__(self, host: str, credential: Credential, port: int = 443):
        self.host = host
        self.credential = credential
        self.port = port
        self.si = None
        self.content = None
        self._definitions = None
        logger.debug(f"Initialized VCenterSession for host: {host}, user: {credential.username}, port: {port}")

    def connect(self) -> None:
        """Connect to vCenter, raising SessionError on failure"""
        logger.info(f"Connecting to vCenter server {self.host}...")
        try:
            self.si = SmartConnect(
                host=self.host,
                user=self.credential.username,
                pwd=self.credential.password,
                port=self.port,
                disableSslCertValidation=True
            )
            self.content = self.si.RetrieveContent()
        except Exception as e:
            logger.debug(f"Connection to {self.host} failed", exc_info=True)
            raise SessionError(f"Could not connect to {self.host}: {str(e)}") from e
        logger.info(f"Successfully connected to vCenter server {self.host}")

    def disconnect(self) -> None:
        if self.si:
            logger.debug(f"Disconnecting from vCenter server {self.host}")
            Disconnect(self.si)
            self.si = None
            self.content = None
            self._definitions = None
            logger.info(f"Disconnected from vCenter server {self.host}")

    def list_attribute_definitions(self) -> Dict[str, "vim.CustomFieldsManager.FieldDef"]:
        """Custom field definitions that apply to virtual machines, keyed by name"""
        definitions = {}
        for field_def in self.content.customFieldsManager.field or []:
            # global definitions have no managed object type
            if field_def.managedObjectType in (None, vim.VirtualMachine):
                definitions.setdefault(field_def.name, field_def)
        self._definitions = definitions
        return dict(definitions)

    def create_attribute_definition(self, name: str) -> "vim.CustomFieldsManager.FieldDef":
        field_def = self.content.customFieldsManager.AddCustomFieldDef(name=name, moType=vim.VirtualMachine)
        if self._definitions is not None:
            self._definitions[name] = field_def
        return field_def

    def _field_definition(self, name: str) -> Optional["vim.CustomFieldsManager.FieldDef"]:
        """Definition of name, read from vCenter once and kept for the rest of the session"""
        if self._definitions is None:
            self.list_attribute_definitions()
        return self._definitions.get(name)

    def find_vm(self, name: str) -> Optional["vim.VirtualMachine"]:
        container = self.content.viewManager.CreateContainerView(
            self.content.rootFolder, [vim.VirtualMachine], True
        )
        try:
            for vm in container.view:
                if vm.name == name:
                    return vm
            return None
        finally:
            container.Destroy()

    def get_annotation(self, vm, name: str) -> str:
        """Current value of custom attribute name on vm, empty when unset or undefined"""
        field_def = self._field_definition(name)
        if field_def is None:
            return ""
        for custom_value in vm.customValue or []:
            if custom_value.key == field_def.key:
                return custom_value.value or ""
        return ""

    def set_annotation(self, vm, name: str, value: str) -> None:
        field_def = self._field_definition(name)
        if field_def is None:
            raise SessionError(f"Custom attribute '{name}' is not defined on {self.host}")
        self.content.customFieldsManager.SetField(entity=vm, key=field_def.key, value=value)


def reconcile_attributes(session: VCenterSession, attribute_names: Sequence[str],
                         mode: RunMode) -> List[AttributeResult]:
    """Make sure every attribute name exists as a VM custom attribute, in header order"""
    logger.info("Checking custom attribute definitions...")
    existing = session.list_attribute_definitions()
    logger.debug(f"Existing VM custom attributes: {sorted(existing)}")

    results = []
    for name in attribute_names:
        if name in existing:
            logger.info(f"Custom attribute '{name}' already exists. No action needed.")
            results.append(AttributeResult(name, AttributeStatus.EXISTS))
            continue

        if mode is RunMode.REPORT:
            logger.info(f"Report: Custom attribute '{name}' would be created.")
            results.append(AttributeResult(name, AttributeStatus.WOULD_CREATE))
            continue

        try:
            session.create_attribute_definition(name)
        except Exception as e:
            logger.error(f"Failed to create custom attribute '{name}': {str(e)}")
            results.append(AttributeResult(name, AttributeStatus.FAILED, str(e)))
            continue

        logger.info(f"Created custom attribute '{name}'.")
        results.append(AttributeResult(name, AttributeStatus.CREATED))

    return results


def _process_row(session: VCenterSession, table: InputTable, row: InputRow, mode: RunMode) -> RowResult:
    if not row.key:
        logger.error(f"Row {row.line}: '{table.key_column}' is empty. Skipping row.")
        return RowResult(row.line, "", RowStatus.SKIPPED_NO_KEY)

    vm = session.find_vm(row.key)
    if vm is None:
        logger.info(f"VM '{row.key}' not found. Skipping.")
        return RowResult(row.line, row.key, RowStatus.VM_NOT_FOUND)

    result = RowResult(row.line, row.key, RowStatus.UNCHANGED)
    for name in table.attribute_names:
        desired = row.values[name]
        current = session.get_annotation(vm, name)

        if desired == current:
            logger.info(f"VM '{row.key}' already has custom attribute '{name}' set to '{desired}'.")
            continue

        result.changes.append((name, desired))
        if mode is RunMode.REPORT:
            logger.debug(f"VM '{row.key}' custom attribute '{name}' is currently '{current}'")
            logger.info(f"Report: Custom attribute '{name}' would be set to '{desired}' for VM '{row.key}'.")
        else:
            session.set_annotation(vm, name, desired)
            logger.info(f"Set custom attribute '{name}' to '{desired}' for VM '{row.key}'.")

    if result.changes:
        result.status = RowStatus.UPDATED
    return result


def process_rows(session: VCenterSession, table: InputTable, mode: RunMode) -> List[RowResult]:
    """Apply (or report) the desired attribute values of every row, in file order"""
    logger.info(f"Processing {len(table.rows)} row(s)...")
    results = []
    for row in table.rows:
        try:
            result = _process_row(session, table, row, mode)
        except Exception as e:
            logger.error(f"Error processing VM '{row.key}' (row {row.line}): {str(e)}")
            logger.debug(f"Traceback for VM '{row.key}'", exc_info=True)
            result = RowResult(row.line, row.key, RowStatus.FAILED, message=str(e))
        results.append(result)
    return results


def close_session(session: VCenterSession, mode: RunMode) -> None:
    if mode is RunMode.REPORT:
        # older releases left the session open in report mode
        logger.info("Report mode: no changes were made; disconnecting the session anyway.")
    try:
        session.disconnect()
    except Exception as e:
        # teardown errors never change the exit status
        logger.error(f"Error disconnecting from vCenter server {session.host}: {str(e)}")
        logger.debug("Disconnect traceback", exc_info=True)


def log_summary(attribute_results: List[AttributeResult], row_results: List[RowResult]) -> None:
    attribute_counts = {status: 0 for status in AttributeStatus}
    for result in attribute_results:
        attribute_counts[result.status] += 1
    row_counts = {status: 0 for status in RowStatus}
    for result in row_results:
        row_counts[result.status] += 1

    logger.info("=" * 60)
    logger.info("Custom attributes: " + ", ".join(
        f"{status.value}={count}" for status, count in attribute_counts.items()))
    logger.info("Rows: " + ", ".join(
        f"{status.value}={count}" for status, count in row_counts.items()))
    logger.info("=" * 60)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Create vCenter custom attributes and set their values on VMs from a CSV/Excel file',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
The first column named '{DEFAULT_KEY_COLUMN}' holds VM names, every other column
is a custom attribute. '{CREDENTIAL_FILE_NAME}' (PowerShell Export-Clixml) must
sit next to the input file; the log file is written to the same directory.

Examples:
  # Pick the input file with a dialog and apply changes
  %(prog)s --server vcenter.example.com

  # Only report what would change
  %(prog)s --server vcenter.example.com --input C:\\data\\attributes.csv --report
        """
    )
    parser.add_argument('--server', required=True,
                        help='vCenter server hostname or IP')
    parser.add_argument('--report', '--dry-run', dest='report', action='store_true',
                        help='Report intended changes without applying them')
    parser.add_argument('--input',
                        help='Input CSV/Excel file (a file dialog is shown if omitted)')
    parser.add_argument('--key-column', default=DEFAULT_KEY_COLUMN,
                        help=f'Column holding VM names (default: {DEFAULT_KEY_COLUMN})')
    parser.add_argument('--port', type=int, default=443,
                        help='vCenter port (default: 443)')
    parser.add_argument('--verbose', action='store_true',
                        help='Show debug messages on the console')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)
    mode = RunMode.REPORT if args.report else RunMode.APPLY

    try:
        run_preflight_checks()
        input_path = select_input_file(args.input)
        attach_log_file(input_path.parent)

        logger.info("=" * 60)
        logger.info(f"VM custom attribute update started ({mode.value} mode)")
        logger.info(f"Target vCenter server: {args.server}")
        logger.info("=" * 60)

        table = load_input_table(input_path, args.key_column)
        credential = load_credential(input_path.parent / CREDENTIAL_FILE_NAME)

        session = VCenterSession(args.server, credential, args.port)
        session.connect()
        try:
            attribute_results = reconcile_attributes(session, table.attribute_names, mode)
            row_results = process_rows(session, table, mode)
        finally:
            close_session(session, mode)
    except AttributeSyncError as e:
        logger.error(f"Error: {str(e)}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {str(e)}", exc_info=True)
        return 1

    log_summary(attribute_results, row_results)
    logger.info("VM custom attribute update completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
