"""
Prompt framings for the three intelligence services.

Attempt 1 gets the base framing; later attempts get the same framing plus the
previous failure, so the service can correct itself.
"""
from typing import Dict, Sequence

from .retry import Attempt
from .schema import Flow, FlowCategory, StatementMetadata

FLOW_COLORS: Dict[FlowCategory, str] = {
    FlowCategory.REVENUE: "#10B981",
    FlowCategory.EXPENSE: "#EF4444",
    FlowCategory.ASSET: "#3B82F6",
    FlowCategory.LIABILITY: "#F59E0B",
    FlowCategory.EQUITY: "#8B5CF6",
}

ANALYSIS_OUTPUT_CONTRACT = """{
  "flows": [
    {
      "source": "string (e.g. 'Total Revenue')",
      "target": "string (e.g. 'Operating Expenses')",
      "amount": number (positive, no formatting),
      "category": "revenue" | "expense" | "asset" | "liability" | "equity",
      "metadata": {"lineItem": "optional", "statementSection": "optional"}
    }
  ],
  "metadata": {
    "company": "company name",
    "period": {"start": "YYYY-MM-DD", "end": "YYYY-MM-DD", "quarter": 1-4, "year": YYYY},
    "currency": "3-letter code, e.g. USD",
    "statementType": ["Income Statement", "Balance Sheet", ...]
  },
  "confidence": 0.0-1.0
}"""

VERIFICATION_CONTRACT = """{
  "overallAccuracy": number (0.0-1.0),
  "discrepancies": [
    {"flow": "source -> target", "expected": number, "actual": number, "percentageError": number}
  ],
  "valueComparisons": [
    {"flow": "source -> target", "diagramValue": number, "sourceValue": number, "match": boolean, "error": number}
  ],
  "confidenceScore": number (0.0-1.0),
  "reasoning": "explanation of why the diagram is correct or incorrect"
}"""


def _money(amount: float) -> str:
    return f"{amount:,.2f}"


def _retry_suffix(attempt: Attempt) -> str:
    return (
        f"\n\nRETRY ATTEMPT {attempt.number}: the previous attempt failed with: "
        f"{attempt.prior_error or 'Unknown error'}\n"
        "Review the input again and make sure the answer satisfies every requirement above."
    )


# ─────────────────────────────────────────────────────────────
# Extraction
# ─────────────────────────────────────────────────────────────

def extraction_prompt(text, is_scanned: bool, attempt: Attempt) -> str:
    prompt = (
        "You are a financial data extraction expert. Extract every financial flow "
        "from the financial statement below.\n\n"
        "For each flow give the source, the target, the exact positive amount and one "
        "category out of revenue, expense, asset, liability or equity. Also extract the "
        "company, reporting period, currency and statement types.\n\n"
        f"Respond with JSON only, shaped as:\n{ANALYSIS_OUTPUT_CONTRACT}\n\n"
        "Use exact numeric values without separators or currency symbols. "
        "The confidence value must reflect the actual extraction quality."
    )
    if is_scanned or text is None:
        prompt += (
            "\n\nThe document is scanned or image based. Read the attached document "
            "directly, paying attention to tables, headers and numeric columns."
        )
    else:
        prompt += f"\n\nFinancial Statement Content:\n{text}"

    if attempt.is_retry:
        prompt += _retry_suffix(attempt)
    return prompt


# ─────────────────────────────────────────────────────────────
# Generation
# ─────────────────────────────────────────────────────────────

def diagram_prompt(flows: Sequence[Flow], metadata: StatementMetadata, attempt: Attempt) -> str:
    totals = {category: 0.0 for category in FlowCategory}
    for flow in flows:
        totals[flow.category] += flow.amount
    max_total = max(totals.values()) or 1.0

    lines = []
    for flow in flows:
        width = flow.amount / max_total * 100
        lines.append(
            f'- Flow from "{flow.source}" to "{flow.target}": {_money(flow.amount)} '
            f"{metadata.currency} (width: {width:.1f}%, color: {FLOW_COLORS[flow.category]}, "
            f"category: {flow.category.value})"
        )

    prompt = (
        "Generate a professional Sankey diagram for financial data visualization.\n\n"
        "Requirements:\n"
        "1. Image dimensions: 1024x1024 pixels\n"
        "2. Format: PNG with a white background\n"
        "3. Label every flow with its exact amount as listed below\n"
        "4. Arrow widths proportional to the amounts, colored by category\n\n"
        f"Company: {metadata.company}\n"
        f"Period: Q{metadata.period.quarter} {metadata.period.year}\n"
        f"Currency: {metadata.currency}\n\n"
        "Flows:\n" + "\n".join(lines)
    )
    if attempt.is_retry:
        prompt += _retry_suffix(attempt)
    return prompt


# ─────────────────────────────────────────────────────────────
# Verification
# ─────────────────────────────────────────────────────────────

def verification_prompt(flows: Sequence[Flow], threshold: float, attempt: Attempt) -> str:
    tolerance = f"{threshold * 100:.2f}%"
    lines = [
        f'{i}. Flow from "{flow.source}" to "{flow.target}": {_money(flow.amount)} '
        f"(category: {flow.category.value})"
        for i, flow in enumerate(flows, start=1)
    ]
    prompt = (
        "You are a financial data verification expert. Check that the attached Sankey "
        "diagram represents the flows below exactly.\n\n"
        "ORIGINAL FINANCIAL FLOWS (source of truth):\n" + "\n".join(lines) + "\n\n"
        "Read every flow value from the diagram, compare it with the source value and "
        "compute the percentage error as |diagram - source| / source * 100. "
        f"Any flow with an error above {tolerance} is a discrepancy.\n\n"
        f"Respond with JSON only, shaped as:\n{VERIFICATION_CONTRACT}"
    )
    if attempt.is_retry:
        prompt += _retry_suffix(attempt)
    return prompt
