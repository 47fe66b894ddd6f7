# uasession/protocols/opcua/__init__.py
from uasession.protocols.opcua.asyncua_engine import AsyncuaEngine

__all__ = ["AsyncuaEngine"]
