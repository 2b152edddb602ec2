"""Prompt templates for retrieval and insight generation."""

from __future__ import annotations

from collections.abc import Sequence

from abm_insights.models.insights import Citation

SYSTEM_PROMPT = "You are an expert ABM strategist. Always return valid JSON."


def render_retrieval_query(company: str) -> str:
    """Fixed retrieval query; depends on the company name only."""
    return (
        f"Generate relevant ABM insights for {company}. Focus on:\n"
        "- Recent company news and developments\n"
        "- Product launches or updates\n"
        "- Industry trends affecting the company\n"
        "- Potential pain points or opportunities\n"
        "- Key decision makers or team information"
    )


def render_context_block(texts: Sequence[str]) -> str:
    return "\n\n".join(f"[{idx}] {text}" for idx, text in enumerate(texts, start=1))


def render_insights_prompt(
    company: str,
    company_information: str,
    citations: Sequence[Citation],
) -> str:
    citations_text = "\n\n".join(
        f"{idx}. {citation.text}\n   Source: {citation.title or citation.url}"
        for idx, citation in enumerate(citations, start=1)
    )
    return (
        "You are an ABM (Account-Based Marketing) research assistant. "
        f"Generate personalized insights and outreach content for {company}.\n\n"
        "Company Information:\n"
        f"{company_information}\n\n"
        "Recent Research & Citations:\n"
        f"{citations_text}\n\n"
        "Generate a comprehensive ABM analysis with the following structure:\n"
        "1. Key Insights (3-5 bullet points about the company's current state, recent news, or opportunities)\n"
        "2. Personalized Email Subject Line (compelling, specific to recent news/insights)\n"
        "3. Personalized Email Body (professional, warm, references specific recent developments, "
        "includes a clear value proposition)\n"
        "4. Citations (list of source URLs used)\n\n"
        "Return your response as a JSON object with this exact structure:\n"
        "{\n"
        '  "insights": ["insight 1", "insight 2", ...],\n'
        '  "email_subject": "Subject line here",\n'
        '  "email_body": "Full email body here",\n'
        '  "citations": ["url1", "url2", ...]\n'
        "}\n\n"
        "Be specific, reference recent news or developments, and make the outreach feel personalized and relevant."
    )
