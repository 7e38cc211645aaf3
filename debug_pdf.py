"""
Debug script to show what the preprocessor makes of a statement PDF:
page count, scanned detection, metadata and the first lines of text.
"""
import sys

from backend.flowgraph.document import PDFParser, validate_pdf

if len(sys.argv) < 2:
    print("usage: python debug_pdf.py <statement.pdf>")
    sys.exit(1)

with open(sys.argv[1], "rb") as f:
    data = f.read()

validate_pdf(data)
doc = PDFParser().parse(data)

print(f"Total pages: {doc.page_count}")
print(f"Scanned: {doc.is_scanned}")
print(f"SHA-256: {doc.document_hash}")
for key, value in doc.info.items():
    print(f"{key}: {value}")

if doc.text:
    print("\n--- Raw Text (first 30 lines) ---")
    for i, line in enumerate(doc.text.split('\n')[:30]):
        print(f"[{i}] {line}")
else:
    print("\nNo text layer; the document will be sent to extraction as a file.")
