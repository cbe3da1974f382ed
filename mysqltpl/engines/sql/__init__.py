"""
SQL templating: directive compiler, bind-marker binder and key casing.

Exports: TemplateCompiler, ParameterBinder, bind, layout,
to_application_casing, to_wire_casing.
"""

from mysqltpl.engines.sql.binder import ParameterBinder, bind, layout
from mysqltpl.engines.sql.casing import to_application_casing, to_wire_casing
from mysqltpl.engines.sql.template_engine import TemplateCompiler, get_compiler

__all__ = [
    "TemplateCompiler",
    "get_compiler",
    "ParameterBinder",
    "bind",
    "layout",
    "to_application_casing",
    "to_wire_casing",
]
