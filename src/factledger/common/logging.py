import logging
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s]: %(message)s"


class LazyFlushingFileHandler(logging.Handler):
    """
    File handler lazy qui :
    1. Ne crée le fichier que lors du premier log réel (pas à l'initialisation)
    2. Flush immédiatement après chaque log
    """
    def __init__(self, filename: str, mode: str = 'a', encoding: str = 'utf-8'):
        super().__init__()
        self.filename = filename
        self.mode = mode
        self.encoding = encoding
        self._handler: Optional[logging.FileHandler] = None

    def _ensure_handler(self):
        """Crée le FileHandler réel uniquement lors du premier log"""
        if self._handler is None:
            Path(self.filename).parent.mkdir(parents=True, exist_ok=True)
            self._handler = logging.FileHandler(
                self.filename,
                mode=self.mode,
                encoding=self.encoding
            )
            self._handler.setFormatter(self.formatter)
            self._handler.setLevel(self.level)

    def emit(self, record):
        self._ensure_handler()
        self._handler.emit(record)
        self._handler.flush()

    def close(self):
        if self._handler:
            self._handler.close()
        super().close()


def setup_logging(
    logs_dir: Path,
    log_file_name: str,
    logger_name: str = "factledger",
    enable_console: bool = True,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Configuration de logging avec création lazy du fichier.

    Le fichier de log n'est créé que lors du premier log effectif, pas à l'initialisation.
    Les modules du package loggent via logging.getLogger(__name__) et remontent
    jusqu'au logger "factledger" configuré ici.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    # Supprimer handlers existants (si reconfiguration)
    if logger.hasHandlers():
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

    logger.propagate = False

    if enable_console:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)

    log_file = Path(logs_dir) / log_file_name
    fh_lazy = LazyFlushingFileHandler(str(log_file), mode='a', encoding="utf-8")
    fh_lazy.setLevel(level)
    fh_lazy.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh_lazy)

    # IMPORTANT: Ne pas logger ici pour éviter création immédiate du fichier

    return logger


def configure_logging(settings=None, enable_console: bool = True) -> logging.Logger:
    """Configure le logger racine du package depuis les settings."""
    from factledger.config.settings import get_settings

    settings = settings or get_settings()
    level = logging.DEBUG if settings.debug_mode else logging.INFO
    return setup_logging(
        settings.logs_dir,
        "fact_ledger.log",
        "factledger",
        enable_console=enable_console,
        level=level,
    )
