import os
from pathlib import Path

LOG_DIR = Path(os.environ.get("AVR_FLASH_LOG_DIR", Path(__file__).parent / "logs"))

LOG_FILE = LOG_DIR / "session.jsonl"
APP_NAME = "AVR flash CLI"

# Параметры линии (AVR109 / Caterina)
DEFAULT_BAUD_RATE = 57600
BOOTLOADER_BAUD_RATE = 57600
TOUCH_BAUD_RATE = 1200          # «касание» на 1200 бод = вход в загрузчик
READ_TIMEOUT = 5.0              # секунды
WRITE_TIMEOUT = 5.0

# Железу нужно время на перезагрузку, ждём честно
SETTLE_DELAY = 2.0
REENTRY_WINDOW = 3.0            # сколько ещё ждём появления загрузчика после паузы
POLL_INTERVAL = 0.25
