from .excel_adapter import ExcelAdapter

__all__ = ["ExcelAdapter"]
