import io
import openpyxl
from openpyxl.utils import get_column_letter
from pathlib import Path

from ..schema import COLUMN_HEADER_ROW, DATA_START_ROW


class ExcelAdapter:
    """Reads and writes catalog workbooks laid out with the 3-row header.

    Row 1 holds merged group headers, row 2 the column headers, row 3 the
    instruction text, and data starts at row 4.
    """

    extensions = [".xlsx", ".xlsm"]

    def can_handle(self, source):
        if isinstance(source, (bytes, bytearray)) or hasattr(source, "read"):
            return True
        return Path(source).suffix.lower() in self.extensions

    def read(self, source):
        """Read every sheet into header and data cell maps.

        Returns:
            List of sheets, each a dict with 'title', 'headers'
            (column index -> header text) and 'rows' (list of
            (row_number, {column index: value}) tuples).
        """
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(source)
        wb = openpyxl.load_workbook(source, data_only=True)

        sheets = []
        try:
            for ws in wb.worksheets:
                headers = {}
                for cell in ws[COLUMN_HEADER_ROW] if ws.max_row >= COLUMN_HEADER_ROW else ():
                    if cell.value is not None:
                        headers[cell.column] = cell.value

                rows = []
                for row in ws.iter_rows(min_row=DATA_START_ROW):
                    values = {}
                    for cell in row:
                        if cell.column not in headers:
                            continue
                        # Hyperlink target wins over the display text
                        if cell.hyperlink is not None and cell.hyperlink.target:
                            values[cell.column] = cell.hyperlink.target
                        else:
                            values[cell.column] = cell.value
                    rows.append((row[0].row, values))

                sheets.append({"title": ws.title, "headers": headers, "rows": rows})
        finally:
            wb.close()

        return sheets

    def write(self, sheets, destination):
        """Write sheets in the 3-row header layout.

        Args:
            sheets: List of dicts with 'title', 'group_headers' (list of
                (label, span) pairs), 'headers', 'instructions', 'rows'
                (list of value lists) and 'hidden' (header texts to hide)
            destination: Path or binary file object
        """
        wb = openpyxl.Workbook()
        wb.remove(wb.active)

        for sheet in sheets:
            ws = wb.create_sheet(title=sheet["title"])

            col_idx = 1
            for label, span in sheet.get("group_headers", []):
                ws.cell(row=1, column=col_idx, value=label)
                if span > 1:
                    ws.merge_cells(start_row=1, start_column=col_idx, end_row=1, end_column=col_idx + span - 1)
                col_idx += span

            headers = sheet["headers"]
            instructions = sheet.get("instructions", [])
            for col_idx, header in enumerate(headers, start=1):
                ws.cell(row=COLUMN_HEADER_ROW, column=col_idx, value=header)
                if col_idx <= len(instructions):
                    ws.cell(row=COLUMN_HEADER_ROW + 1, column=col_idx, value=instructions[col_idx - 1])
                if header in sheet.get("hidden", ()):
                    ws.column_dimensions[get_column_letter(col_idx)].hidden = True

            for row_idx, row_data in enumerate(sheet["rows"], start=DATA_START_ROW):
                for col_idx, value in enumerate(row_data, start=1):
                    if value is not None and value != "":
                        ws.cell(row=row_idx, column=col_idx, value=value)

        wb.save(destination)
        return destination
