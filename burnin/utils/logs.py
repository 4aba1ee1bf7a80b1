# burnin/utils/logs.py
import logging
from colorama import Fore, Style, init

init(autoreset=True)  # reseta cores automaticamente

PROCESS_LEVEL = 25  # INFO=20, WARNING=30 -> PROCESS in between
logging.addLevelName(PROCESS_LEVEL, "PROCESS")

def process(self, message, *args, **kwargs):
    if self.isEnabledFor(PROCESS_LEVEL):
        self._log(PROCESS_LEVEL, message, args, **kwargs)

# inject process() into logging.Logger
logging.Logger.process = process


class ColorFormatter(logging.Formatter):
    COLORS = {
        'PROCESS': Fore.CYAN,
        'DEBUG': Fore.BLUE,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.MAGENTA
    }

    def format(self, record):
        levelname = record.levelname
        color = self.COLORS.get(levelname, Fore.WHITE)
        log_fmt = f"[%(asctime)s] {levelname:<8} %(name)s: %(message)s"
        formatter = logging.Formatter(log_fmt, "%Y-%m-%d %H:%M:%S")
        return color + formatter.format(record) + Style.RESET_ALL


def setup_logger(root_level=logging.INFO, silence_names=None):
    """
    Initialise the coloured root logger and silence noisy loggers.

    :param root_level: root logger level (DEBUG/INFO/WARNING/ERROR)
    :param silence_names: extra logger names forced to ERROR
    :return: configured root logger
    """
    if silence_names is None:
        silence_names = []

    logger = logging.getLogger()
    logger.setLevel(root_level)

    # drop handlers installed by earlier calls
    for h in list(logger.handlers):
        if isinstance(h.formatter, ColorFormatter):
            logger.removeHandler(h)

    ch = logging.StreamHandler()
    ch.setFormatter(ColorFormatter())
    logger.addHandler(ch)

    defaults_to_silence = [
        "werkzeug",          # flask dev server
        "asyncio",
        "pymodbus",
        "urllib3",           # requests (MES reporter)
        "paho",
    ]

    for name in defaults_to_silence + list(silence_names):
        logging.getLogger(name).setLevel(logging.ERROR)
        logging.getLogger(name).propagate = False

    return logger


def set_level(level):
    """Change the root level at runtime (accepts names such as ``"DEBUG"``)."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.getLogger().setLevel(level)


setup_logger()

# engine-wide logger; modules import this instance
logger = logging.getLogger("burnin")
