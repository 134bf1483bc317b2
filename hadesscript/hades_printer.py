"""
A pretty-printer for HadesScript values.
"""
import collections.abc

from hadesscript.hades_datatypes import Collection, IDENTIFIER_RE, format_number


class Printer:
    """Formats script values as HadesScript literal source."""

    def __init__(self):
        self._handlers = self._create_handlers()

    def pformat(self, obj) -> str:
        """Public entry point to format a value."""
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_mapping
        return repr

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: format_number,
            float: format_number,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Collection: self._pformat_collection,
        }

    def _pformat_str(self, obj):
        escaped = obj.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"

    def _pformat_bool(self, obj):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj):
        return 'null'

    def _pformat_collection(self, obj):
        # Integer keys are positional only while they follow append order.
        parts = []
        expected = 0
        for key, value in obj.items():
            rendered = self.pformat(value)
            if key == expected:
                parts.append(rendered)
                expected += 1
            else:
                parts.append(f"{self._pformat_key(key)}: {rendered}")
        return f"[{', '.join(parts)}]"

    def _pformat_mapping(self, obj):
        return self._pformat_collection(Collection(obj))

    def _pformat_key(self, key):
        if isinstance(key, str) and IDENTIFIER_RE.match(key):
            return key
        return str(key)
