from __future__ import annotations

"""Prompt text for the three LLM calls: selection planning, image analysis,
and follow-up conversation.

Only technical, non-identifying metadata goes into prompts.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .plan import MAX_IMAGES, SelectionPlan
from .study import Series, Study

DISCLAIMER = (
    "IMPORTANT: This is a research tool, NOT for clinical diagnosis. "
    "All findings are for educational and demonstration purposes only."
)

SPATIAL_KEYWORDS = [
    "this slice",
    "current slice",
    "current view",
    "this view",
    "what am i looking at",
    "what is this",
    "this area",
    "right here",
    "this structure",
    "this region",
    "where i am",
]


@dataclass(frozen=True)
class ViewportContext:
    current_instance_number: int
    current_coordinate: float
    series_number: str
    total_slices_in_series: int


@dataclass(frozen=True)
class ChatMessage:
    role: str  # user|assistant
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role="assistant", content=content)


# ---------- metadata summary ----------

def format_series_summary(s: Series) -> str:
    parts = [
        f'Series #{s.number}: "{s.description or "(no description)"}"',
        f"Plane: {s.plane.value}",
        f"{s.slice_count} slices (instance {s.instance_range[0]}-{s.instance_range[1]})",
    ]
    if s.coverage_mm > 0:
        parts.append(f"coverage: {s.coverage_mm:.1f}mm ({s.coord_min:.1f} to {s.coord_max:.1f})")
    p = s.params
    if p.slice_thickness is not None:
        parts.append(f"thickness: {p.slice_thickness:g}mm")
    if p.convolution_kernel:
        parts.append(f"kernel: {p.convolution_kernel}")
    if s.window_center is not None and s.window_width is not None:
        parts.append(f"preset W/L: W={round(s.window_width)} C={round(s.window_center)}")
    if p.rows is not None and p.columns is not None:
        matrix = f"matrix: {p.rows}x{p.columns}"
        if p.pixel_spacing:
            matrix += f" @ {p.pixel_spacing[0]:.2f}x{p.pixel_spacing[1]:.2f}mm"
        parts.append(matrix)
    if p.estimated_weighting:
        mr = p.estimated_weighting
        if p.repetition_time is not None and p.echo_time is not None:
            mr += f" (TR:{round(p.repetition_time)} TE:{round(p.echo_time)})"
        parts.append(mr)
    if p.kvp is not None:
        ct = f"{p.kvp:g}kV"
        if p.xray_tube_current is not None:
            ct += f" {p.xray_tube_current:g}mA"
        parts.append(ct)
    return " | ".join(parts)


def format_study_summary(study: Study) -> str:
    lines = [
        "=== STUDY INFORMATION ===",
        f"Study: {study.description}",
        f"Modality: {study.modality}",
    ]
    if study.body_part:
        lines.append(f"Body Part: {study.body_part} (note: this tag is often unreliable)")
    if study.patient_age:
        lines.append(f"Patient Age: {study.patient_age}")
    if study.patient_sex:
        lines.append(f"Patient Sex: {study.patient_sex}")
    if study.study_date and len(study.study_date) >= 8:
        d = study.study_date
        lines.append(f"Study Date: {d[0:4]}-{d[4:6]}-{d[6:8]}")
    if study.institution:
        lines.append(f"Institution: {study.institution}")

    scanner = [x.strip() for x in (study.manufacturer, study.manufacturer_model_name) if x and x.strip()]
    mr = next((s for s in study.series if s.modality == "MR" and s.params.magnetic_field_strength), None)
    if mr is not None:
        scanner.append(f"{mr.params.magnetic_field_strength:g}T")
    if scanner:
        lines.append(f"Scanner: {' '.join(scanner)}")

    lines.append("")
    lines.append(f"=== AVAILABLE SERIES ({len(study.series)}) ===")
    for s in study.series:
        lines.append(format_series_summary(s))
    return "\n".join(lines)


# ---------- call 1: selection planning ----------

def build_selection_system_prompt(budget: int = MAX_IMAGES) -> str:
    return "\n".join(
        [
            "You are a medical imaging AI assistant that selects the most relevant DICOM slices for analysis.",
            DISCLAIMER,
            "",
            "## Series selection",
            "Pick ONE primary series where the structure of interest is best visualized for the clinical",
            "question, and optionally one or two supplementary series in other planes or weightings.",
            "- Knee MRI: ACL/PCL and menisci -> sagittal PD fat-sat (primary), coronal PD fat-sat (supplementary)",
            "- Brain MRI: stroke -> DWI/ADC (primary), FLAIR; tumor -> T1 post-contrast (primary), FLAIR, T2",
            "- Spine MRI: disc herniation -> sagittal T2 (primary), axial T2 at the level of interest",
            "- CT: soft tissue W:400 C:40, lung W:1500 C:-600, bone W:2000 C:400",
            "- Fat-suppressed sequences highlight pathology; higher resolution series are preferred",
            "- If the question does not map to an orientation, prefer the standard plane with most slices",
            "",
            "## Slice range",
            "Do NOT default to the whole series. Reason about WHERE the anatomy is and select a focused",
            "instance-number range. If unsure, take the middle 50-70% of the series.",
            "",
            "## OUTPUT CONSTRAINTS (MANDATORY)",
            f"- At most {budget} images in total across ALL selections",
            "- samplingStrategy 'uniform' with samplingParam N means exactly N evenly spaced slices",
            "- 'every_nth' with samplingParam N keeps every N-th slice",
            f"- NEVER use 'all' when the range holds more than {budget} slices",
            "",
            "## Output format",
            "Output ONLY a JSON object (no markdown fences, no prose) with these fields:",
            "{",
            '  "reasoning": string,',
            '  "selections": [',
            "    {",
            '      "seriesNumber": string,',
            '      "role": "primary" | "supplementary",',
            '      "rationale": string,',
            '      "sliceRange": [start, end],',
            '      "samplingStrategy": "all" | "every_nth" | "uniform",',
            '      "samplingParam": number,',
            '      "windowCenter": number,',
            '      "windowWidth": number',
            "    }",
            "  ],",
            '  "totalImages": number',
            "}",
            "The first selection must be the primary one.",
        ]
    )


def references_viewport(hint: str) -> bool:
    low = (hint or "").lower()
    return any(kw in low for kw in SPATIAL_KEYWORDS)


def build_selection_user_prompt(study: Study, hint: str, viewport_context: Optional[ViewportContext] = None) -> str:
    lines = [format_study_summary(study), ""]

    # Viewport position only matters when the user refers to what they are looking at.
    if viewport_context is not None and references_viewport(hint):
        vc = viewport_context
        lines.append("=== CURRENT VIEWPORT POSITION ===")
        lines.append(
            f"The user is viewing Series #{vc.series_number}, slice #{vc.current_instance_number} "
            f"of {vc.total_slices_in_series} (position {vc.current_coordinate:.1f}mm)."
        )
        lines.append("Center the slice selection around this position.")
        lines.append("")

    lines.append("=== CLINICAL QUESTION ===")
    lines.append(hint)
    lines.append("")
    lines.append("Provide your slice selection plan as a JSON object.")
    return "\n".join(lines)


# ---------- call 2: image analysis ----------

def build_analysis_system_prompt() -> str:
    return "\n".join(
        [
            "You are a medical imaging AI assistant analyzing DICOM images.",
            DISCLAIMER,
            "",
            "## Rules",
            "1. Only report findings you can clearly see on the provided images.",
            "2. Reference the specific slice(s) for every finding.",
            "3. Grade findings as DEFINITE, PROBABLE or POSSIBLE.",
            "4. State explicitly when a structure is not adequately covered by the provided slices.",
            "5. Always include a LIMITATIONS section (slices analyzed vs. total, structures not assessed).",
            "6. Do not fabricate normal findings. When in doubt, say 'cannot determine'.",
            "",
            "## Response format",
            "SUMMARY (2-3 sentences, then a one-line conclusion)",
            "FINDINGS (per clinical question, with slice references)",
            "LIMITATIONS",
            "",
            "Not for clinical diagnosis.",
        ]
    )


def build_analysis_user_prompt(
    study: Study,
    hint: str,
    plan: SelectionPlan,
    labels: Sequence[str],
) -> str:
    n = len(labels)
    lines = [
        f"Analyze ONLY the following {n} images.",
        "",
        f"Clinical question: {hint}",
        "",
        f"Study: {study.description} | {study.modality}",
    ]
    if study.patient_age:
        lines.append(f"Patient: {study.patient_age} {study.patient_sex or ''}".rstrip())
    lines.append("")

    for sel in plan.selections:
        series = study.series_by_number(sel.series_number)
        desc = series.description if series and series.description else "(no description)"
        sampling = sel.strategy.value + (f" ({sel.param})" if sel.param else "")
        head = f"Series #{sel.series_number} [{sel.role.value}]: {desc}"
        if series is not None:
            head += f" | plane {series.plane.value} | {series.slice_count} slices total"
            if series.params.estimated_weighting:
                head += f" | {series.params.estimated_weighting}"
        lines.append(head)
        lines.append(
            f"  instances #{sel.slice_range[0]}-#{sel.slice_range[1]}, {sampling}, "
            f"W={sel.window_width:g} C={sel.window_center:g}"
        )
        if sel.rationale:
            lines.append(f"  rationale: {sel.rationale}")
    if plan.reasoning:
        lines.append(f"Selection reasoning: {plan.reasoning}")
    lines.append("")
    lines.append(
        "IMPORTANT CONTEXT: these are sampled slices with gaps between them. A finding may span more "
        "slices than shown; account for the sampling when describing extent."
    )
    lines.append("")
    lines.append(f"You are provided EXACTLY {n} images. In order:")
    lines.extend(f"  {i}. {label}" for i, label in enumerate(labels, start=1))
    lines.append("")
    lines.append('When referencing findings, cite the slice number as labeled (e.g. "Slice 45/187") so the')
    lines.append('reader can navigate to it. Ranges are allowed (e.g. "Slices 45-66/187").')
    lines.append("Only reference slice numbers from the list above.")
    return "\n".join(lines)


# ---------- follow-up ----------

def build_follow_up_system_prompt(study: Study) -> str:
    return "\n".join(
        [
            "You are a medical imaging AI assistant continuing a conversation about DICOM image analysis.",
            DISCLAIMER,
            "",
            "You previously analyzed images and gave findings. Answer follow-up questions from your",
            "prior analysis; you no longer have access to the images. Be concise, and say so when a",
            "question is outside the scope of what you analyzed.",
            "",
            f"Study context: {study.description} | {study.modality}",
        ]
    )
