VERSION = "0.4.0"
ENGINE_LOG_FILENAME = "LTS-Engine.log"
ENGINE_LOG_DIR_ENV = "LTS_ENGINE_LOG_DIR"
LOG_ROTATE_MAX_BYTES = 5 * 1024 * 1024
# Keep up to 10 files per log stream (1 active + 9 backups).
LOG_ROTATE_BACKUP_COUNT = 9

FUTURES_BASE_URL = "https://fapi.binance.com"
FUTURES_TESTNET_BASE_URL = "https://testnet.binancefuture.com"
