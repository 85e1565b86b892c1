"""Qt compatibility layer for PySide6, PyQt6 and PyQt5.

Workers are started as detached processes through ``QProcess``, which
behaves the same on every platform Qt supports. Importing this module never
fails: when no binding is installed `QT_AVAILABLE` is False and launching
reports an error instead.
"""

# Try to import Qt frameworks in order of preference
QT_API = None
QtCore = None
QT_VERSION = None

try:
    from PySide6 import QtCore

    QT_API = "PySide6"
    QT_VERSION = QtCore.__version__
except (ImportError, NotImplementedError):
    pass

if QT_API is None:
    try:
        from PyQt6 import QtCore

        QT_API = "PyQt6"
        QT_VERSION = QtCore.PYQT_VERSION_STR
    except (ImportError, NotImplementedError):
        pass

if QT_API is None:
    try:
        from PyQt5 import QtCore

        QT_API = "PyQt5"
        QT_VERSION = QtCore.PYQT_VERSION_STR
    except (ImportError, NotImplementedError):
        pass

QT_AVAILABLE = QT_API is not None


def get_qt_api():
    """Return the name of the Qt API being used."""
    return QT_API


def get_qt_version():
    """Return the version of the Qt framework being used."""
    return QT_VERSION


def start_detached(program: str, arguments: list[str], working_directory: str = "") -> tuple[bool, int]:
    """Start `program` detached from this process; returns ``(ok, pid)``.

    The bindings disagree on the return value of ``QProcess.startDetached``
    (a bare bool or an ``(ok, pid)`` pair), so it is normalized here.
    """
    if not QT_AVAILABLE:
        raise RuntimeError(
            "No Qt framework found. Please install one of: PySide6, PyQt6, or PyQt5"
        )
    result = QtCore.QProcess.startDetached(program, list(arguments), working_directory)
    if isinstance(result, tuple):
        ok, pid = result[0], result[1] if len(result) > 1 else 0
    else:
        ok, pid = result, 0
    return bool(ok), int(pid or 0)


__all__ = [
    "QtCore",
    "QT_API",
    "QT_AVAILABLE",
    "QT_VERSION",
    "get_qt_api",
    "get_qt_version",
    "start_detached",
]
