import platform
import time

import psutil

def get_system_info() -> dict:
    """
    Host summary reported by the health check.
    """
    memory = psutil.virtual_memory()
    return {
        "os_platform": platform.system(),
        "os_release": platform.release(),
        "hostname": platform.node(),
        "python_version": platform.python_version(),
        "cpu_count": psutil.cpu_count(logical=True),
        "cpu_percent": psutil.cpu_percent(interval=None),
        "total_memory_gb": round(memory.total / (1024**3), 2),
        "memory_percent": memory.percent,
        "uptime_seconds": int(time.time() - psutil.boot_time()),
    }
