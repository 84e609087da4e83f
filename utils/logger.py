# utils/logger.py
import logging
import os

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE = "payments.log"


def configure_logging(log_dir: str = "logs", level: str = "INFO") -> logging.Logger:
     """
     Attach a console handler and a payments.log file handler to the root logger.
     Safe to call more than once.
     """
     root = logging.getLogger()
     root.setLevel(level.upper())

     if getattr(root, "_payments_configured", False):
          return root

     formatter = logging.Formatter(LOG_FORMAT)

     console = logging.StreamHandler()
     console.setFormatter(formatter)
     root.addHandler(console)

     os.makedirs(log_dir, exist_ok=True)
     file_handler = logging.FileHandler(os.path.join(log_dir, LOG_FILE))
     file_handler.setFormatter(formatter)
     root.addHandler(file_handler)

     root._payments_configured = True
     return root
