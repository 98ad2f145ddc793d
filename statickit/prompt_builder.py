from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from .interfaces import GenerationOptions, SuggestionKind


DEFAULT_ANALYSIS: Dict[str, Any] = {
    "product": "Image",
    "brand_style": "Not specified",
    "visual_elements": [],
    "key_selling_points": [],
    "target_audience": "General",
    "colors": [],
    "mood": "Not specified",
}


class PromptPayload:
    """Simple wrapper around OpenRouter/OpenAI-style chat messages."""

    def __init__(self, messages: Iterable[Dict[str, Any]]):
        self._messages = [dict(m) for m in messages]

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return list(self._messages)

    def __iter__(self):  # pragma: no cover - convenience only
        return iter(self._messages)


_EDIT_TEMPLATE = """Edit this advertising image according to the following instructions.

EDIT REQUEST:
{instruction}

=== ABSOLUTE RULES ===

**SCREEN PROTECTION**: If there is ANY screen (laptop, phone, monitor, TV, tablet):
- Do NOT modify what is displayed on the screen
- Screen content must remain EXACTLY the same
- This is non-negotiable

**PRODUCT PROTECTION**: The product must stay identical:
- Same appearance, position, and details
- Any text, logos, or UI elements unchanged

=== EDIT GUIDELINES ===
1. ONLY make the specific change requested above
2. Keep overall composition the same
3. Maintain aspect ratio: {aspect_ratio}
4. Preserve brand style: {brand_style}
{scope}
Make ONLY the requested edit. Everything else stays exactly the same."""

_BACKGROUND_SCOPE = """
=== SCOPE: BACKGROUND ONLY ===
- Replace or restyle the background and environment only
- Subjects, people and the product keep their exact pose, framing and lighting on them
"""

_MODEL_SCOPE_KEEP = """
=== SCOPE: MODEL ONLY ===
- Replace the person in the image with the model described above
- Keep the exact same clothing, outfit and accessories
- Background, product and composition stay unchanged
"""

_MODEL_SCOPE_NEW = """
=== SCOPE: MODEL ONLY ===
- Replace the person in the image with the model described above
- Clothing may change to suit the new model
- Background, product and composition stay unchanged
"""

_VARIATION_TEMPLATE = """You are creating an A/B test variation of this ad. The product must remain EXACTLY the same - you are changing the environment, lighting, or context around it.

REFERENCE IMAGE: Contains "{product}"

VARIATION REQUESTED:
{instruction}

=== ABSOLUTE RULES (NEVER BREAK THESE) ===

**SCREEN PROTECTION RULE**: If the reference image contains ANY screen (laptop, phone, computer monitor, TV, tablet, smartwatch, or any digital display):
- The content shown on that screen must be COPIED EXACTLY - pixel for pixel
- Do NOT change any UI elements, text, icons, or graphics on the screen
- Do NOT change the screen's brightness, color temperature, or what is displayed
- The screen content is SACRED and UNTOUCHABLE
- This is the #1 most important rule

**PRODUCT PROTECTION RULE**: The product itself must be preserved exactly:
- Same appearance, same details, same colors
- Same size and position relative to the frame
- Any logos, text, or branding on the product stays identical
- Any annotations, arrows, or callouts stay in the same positions

=== WHAT YOU CAN CHANGE ===
Based on the variation request above, you may change:
- The background/environment/setting
- Lighting direction, color temperature, and mood
- Add human elements (hands, person) if requested
- Surface textures (desk material, table type)
- Surrounding objects and context
- Time of day / atmosphere

=== OUTPUT ===
Generate the variation that implements the requested change while keeping the product and any screens EXACTLY as they appear in the reference."""

_RESIZE_TEMPLATE = """Resize and adapt this advertising image to a new aspect ratio.

TARGET DIMENSIONS: {width}x{height} ({ratio})

=== ABSOLUTE RULES (NEVER BREAK) ===

**SCREEN PROTECTION**: If there is ANY screen in the image (laptop, phone, monitor, TV, tablet):
- The content displayed on that screen must remain EXACTLY the same
- Do NOT modify any UI, text, icons, or graphics shown on screens
- Screen content is SACRED and UNTOUCHABLE

**PRODUCT PROTECTION**: The main product/subject must remain identical:
- Same appearance, details, and proportions
- Same position relative to the frame center
- Any text, logos, or annotations unchanged

=== RESIZE GUIDELINES ===
1. Extend or crop the BACKGROUND only to fit {ratio}
2. If taller (like 9:16), extend background vertically
3. If wider (like 16:9), extend background horizontally
4. Keep the product centered and fully visible
5. Maintain visual style and colors: {colors}
6. Result should look native to {ratio} format

Generate the resized version with background adaptation only."""

_ANALYZE_TEMPLATE = """You are an expert advertising analyst. Analyze this static ad image and provide detailed information about it.
{context}
Please analyze the image and return a JSON object with the following structure:
{{
  "product": "What product or service is being advertised",
  "brand_style": "Description of the brand's visual style and identity",
  "visual_elements": ["List of key visual elements in the ad"],
  "key_selling_points": ["List of key selling points or value propositions shown"],
  "target_audience": "Who this ad is targeting",
  "colors": ["List of dominant colors used"],
  "mood": "The overall mood or feeling of the ad"
}}

Return ONLY the JSON object, no other text."""

_SUGGEST_VARIATIONS_TEMPLATE = """You are an expert advertising creative director. Your job is to suggest ITERATIONS of a winning ad.

THE ITERATION FRAMEWORK:
Iterations = change ONE variable only. That's it.
- New location
- New person

Same message. Same product. New backdrop OR new model.

ORIGINAL AD ANALYSIS:
- Product/Service: {product}
- Brand Style: {brand_style}
- Visual Elements: {visual_elements}
- Key Selling Points: {key_selling_points}
- Target Audience: {target_audience}
- Colors: {colors}
- Current Mood: {mood}
{context}
GENERATE 4 ITERATIONS:

**LOCATION ITERATIONS** (3 iterations)
Same ad, new backdrop. The location must be VISUALLY DISTINCT.

Based on the product and current setting, suggest 3 alternative locations that:
1. Make sense for where someone would actually use this product
2. Are VISUALLY DIFFERENT from each other (not just slight variations)
3. Appeal to different lifestyle contexts within the target audience

**PERSON ITERATION** (1 iteration)
If there's a person in the ad, suggest a different model to reach new audience segments.
Vary ethnicity, age, demographics or style. Make it VISUALLY DISTINCT.

CRITICAL RULES:
1. The product MUST remain EXACTLY the same - only change what's AROUND it
2. **SCREEN RULE**: If there's a screen in the image, the content on that screen must NOT change
3. Each iteration changes ONE variable only
4. Iterations must be VISUALLY DIFFERENT enough that the audience can tell them apart
{exclude}
Return a JSON array with exactly 4 iterations:
[
  {{
    "title": "Short descriptive title (2-4 words)",
    "description": "Clear description of the change. Be specific about the new location or person. 1-2 sentences."
  }}
]

Return ONLY the JSON array, no other text."""

_SUGGEST_BACKGROUNDS_TEMPLATE = """Analyze this advertising image and suggest 6 alternative background environments.
{exclude}
CURRENT IMAGE ANALYSIS:
{summary}

YOUR TASK:
1. Identify the main subject/product in the image
2. Identify any people/models in the image
3. Consider where this product would naturally be used
4. Suggest 6 VISUALLY DISTINCT background environments

REQUIREMENTS FOR SUGGESTIONS:
- Each background must be contextually appropriate for the product/subject
- Backgrounds should be VISUALLY DISTINCT from each other
- Consider the target audience and lifestyle contexts
- The subject and any people will remain EXACTLY the same - only the background changes
- Suggest a mix of indoor and outdoor environments where appropriate

Return a JSON array with exactly 6 suggestions:
[
  {{
    "name": "Short name (2-4 words)",
    "prompt": "Detailed description of the background environment for image generation. Be specific about lighting, atmosphere, and setting details. 2-3 sentences."
  }}
]

Return ONLY the JSON array, no other text."""

_SUGGEST_MODELS_TEMPLATE = """Analyze this advertising image and suggest 5 alternative models that would appeal to different target audiences.
{exclude}
CURRENT IMAGE ANALYSIS:
{summary}

YOUR TASK:
1. Identify the current model/person in the image (or note if only partial body like hands is visible)
2. Analyze the product and what demographics would naturally use it
3. Suggest 5 DIFFERENT models that would appeal to NEW target audiences
4. Each suggestion should help the product reach a different demographic

REQUIREMENTS FOR SUGGESTIONS:
- Each model should be DEMOGRAPHICALLY DIFFERENT (age, ethnicity, style)
- Consider who would realistically purchase/use this product
- If only hands/partial body visible, focus on skin tone, hand characteristics, jewelry style
- The background, lighting, product, and setting will remain EXACTLY the same - only the model changes
- Be specific about physical characteristics for image generation

Return a JSON array with exactly 5 suggestions:
[
  {{
    "name": "Short descriptive name (e.g., 'Professional Woman, 30s')",
    "description": "Brief description of who this model represents and why they'd use this product",
    "audience": "Target demographic this appeals to (e.g., 'Career-focused millennials')",
    "prompt": "Detailed description for image generation: gender, approximate age, ethnicity, hair, build and expression. 2-3 sentences."
  }}
]

Return ONLY the JSON array, no other text."""

_SUGGEST_TEMPLATES = {
    SuggestionKind.VARIATIONS: _SUGGEST_VARIATIONS_TEMPLATE,
    SuggestionKind.BACKGROUNDS: _SUGGEST_BACKGROUNDS_TEMPLATE,
    SuggestionKind.MODELS: _SUGGEST_MODELS_TEMPLATE,
}

# Offered when the suggestion call fails, so the variation list is never empty.
_FALLBACK_VARIATIONS = (
    ("Morning Routine", "{product} featured in a bright morning setting. Natural sunlight streaming through windows, clean modern interior, warm golden hour lighting with soft shadows. Appeals to {audience} during their daily routine."),
    ("On-The-Go", "{product} shown in an urban outdoor setting. A vibrant city street with modern architecture in the background and bright natural light. Targets {audience} with busy, active lifestyles."),
    ("Work From Home", "{product} in a stylish home office. Clean desk setup, plant accents, soft diffused light from large windows. Resonates with {audience} who work remotely."),
    ("Weekend Vibes", "{product} in a relaxed weekend setting. Comfortable surroundings, natural and authentic feel, warm afternoon light. Appeals to {audience} during their downtime."),
)


def _analysis_value(analysis: Mapping[str, Any] | None, key: str) -> Any:
    merged = dict(DEFAULT_ANALYSIS)
    if analysis:
        merged.update({k: v for k, v in analysis.items() if v not in (None, "")})
    return merged.get(key)


def build_generation_prompt(instruction: str, options: GenerationOptions) -> str:
    if not options.is_edit:
        return _VARIATION_TEMPLATE.format(
            product=_analysis_value(options.analysis, "product"),
            instruction=instruction,
        )
    scope = ""
    if options.background_only:
        scope = _BACKGROUND_SCOPE
    elif options.model_only:
        scope = _MODEL_SCOPE_KEEP if options.keep_clothing else _MODEL_SCOPE_NEW
    return _EDIT_TEMPLATE.format(
        instruction=instruction,
        aspect_ratio=options.aspect_ratio or "original",
        brand_style=_analysis_value(options.analysis, "brand_style"),
        scope=scope,
    )


def build_resize_prompt(width: int, height: int, ratio: str, analysis: Mapping[str, Any] | None = None) -> str:
    colors = _analysis_value(analysis, "colors") or []
    colors_text = ", ".join(str(c) for c in colors) if isinstance(colors, (list, tuple)) else str(colors)
    return _RESIZE_TEMPLATE.format(width=width, height=height, ratio=ratio, colors=colors_text or "Original")


def build_analyze_prompt(context: str = "") -> str:
    extra = ""
    if (context or "").strip():
        extra = (
            "\nADDITIONAL CONTEXT FROM ADVERTISER:\n"
            f"{context.strip()}\n\n"
            "Use this context to better understand the product, target audience, and campaign goals.\n"
        )
    return _ANALYZE_TEMPLATE.format(context=extra)


def _joined(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value) or "N/A"
    return str(value) if value not in (None, "") else "N/A"


def _analysis_summary(analysis: Mapping[str, Any] | None) -> str:
    if not analysis:
        return "No prior analysis available - analyze the image directly."
    lines = [
        f"- Product: {analysis.get('product') or 'Unknown'}",
        f"- Brand Style: {analysis.get('brand_style') or 'Unknown'}",
        f"- Target Audience: {analysis.get('target_audience') or 'Unknown'}",
        f"- Current Mood: {analysis.get('mood') or 'Unknown'}",
    ]
    return "\n".join(lines)


def build_suggest_prompt(
    kind: SuggestionKind | str,
    analysis: Mapping[str, Any] | None = None,
    *,
    context: str = "",
    exclude: Sequence[str] = (),
) -> str:
    """Prompt asking for a JSON array of variation, background or model ideas.

    Names listed in ``exclude`` were offered before and must not come back.
    """
    kind = SuggestionKind(kind)
    names = [n.strip() for n in exclude if n and n.strip()]
    exclude_text = ""
    if names:
        listed = "\n".join(f"- {n}" for n in names)
        exclude_text = (
            f"\nIMPORTANT - DO NOT suggest any of these (already suggested):\n{listed}\n\n"
            "Your suggestions must be COMPLETELY DIFFERENT from the above list.\n"
        )
    if kind is SuggestionKind.VARIATIONS:
        extra = ""
        if (context or "").strip():
            extra = (
                f"\nADDITIONAL CONTEXT FROM ADVERTISER:\n{context.strip()}\n\n"
                "IMPORTANT: Use this context to tailor iterations to the specific campaign goals and target audience.\n"
            )
        return _SUGGEST_VARIATIONS_TEMPLATE.format(
            product=_analysis_value(analysis, "product"),
            brand_style=_analysis_value(analysis, "brand_style"),
            visual_elements=_joined(_analysis_value(analysis, "visual_elements")),
            key_selling_points=_joined(_analysis_value(analysis, "key_selling_points")),
            target_audience=_analysis_value(analysis, "target_audience"),
            colors=_joined(_analysis_value(analysis, "colors")),
            mood=_analysis_value(analysis, "mood"),
            context=extra,
            exclude=exclude_text,
        )
    return _SUGGEST_TEMPLATES[kind].format(summary=_analysis_summary(analysis), exclude=exclude_text)


def fallback_variations(analysis: Mapping[str, Any] | None = None) -> List[Tuple[str, str]]:
    """(title, description) pairs used when no suggestions could be fetched."""
    product = _analysis_value(analysis, "product") or "the product"
    audience = _analysis_value(analysis, "target_audience") or "the target audience"
    return [(title, text.format(product=product, audience=audience)) for title, text in _FALLBACK_VARIATIONS]


def build_image_payload(prompt_text: str, image_url: str) -> PromptPayload:
    """Single user turn carrying the source image followed by the instruction text."""
    content: List[Dict[str, Any]] = [
        {"type": "image_url", "image_url": {"url": image_url}},
        {"type": "text", "text": prompt_text},
    ]
    return PromptPayload([{"role": "user", "content": content}])


def build_text_payload(prompt_text: str) -> PromptPayload:
    return PromptPayload([{"role": "user", "content": prompt_text}])


def node_label(kind: str, label: str) -> str:
    """History label for scoped requests, e.g. "[background] Beach sunset"."""
    return f"[{kind}] {label}"
