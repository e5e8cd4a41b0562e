"""Transform core: raw staging -> canonical records."""
