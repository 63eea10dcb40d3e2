from typing import Any, Dict


def ok(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}
