"""
Prompting templates for archaeological feature detection in aerial imagery.
The model answers with a list of features, each with a categorical
confidence and a relative position inside the tile.
"""

FEATURE_TYPES = ("mound", "earthwork", "cropmark", "geometric", "anomaly", "other")


def get_system_prompt():
    """System prompt for consistent JSON formatting."""
    return "You are an expert archaeological surveyor analyzing aerial imagery. Return ONLY valid JSON. No extra text or explanations."


def get_archaeological_prompt():
    """Survey prompt: what to look for, what mimics it, and the JSON shape to answer with."""
    return """You are analyzing aerial/satellite imagery for potential undocumented archaeological sites in the United States.

Analyze this image for potential archaeological features. Focus on:

1. MOUNDS: Circular or conical elevated areas, typically 10-100m diameter.
✓ Regular circular shadows indicating elevation
✓ Vegetation differences on raised areas
✓ Symmetrical shapes inconsistent with natural terrain

2. EARTHWORKS: Linear embankments, geometric enclosures, effigy shapes.
✓ Straight lines or regular curves in the landscape
✓ Rectangular or circular enclosures
✓ Connected linear features

3. CROP MARKS: Vegetation differences indicating buried structures.
✓ Geometric patterns in crop/grass coloring
✓ Lines or shapes visible through differential growth
✓ Circles or rectangles in agricultural fields

4. SHADOW ANOMALIES: Subtle elevation changes.
✓ Linear shadows that don't match surrounding terrain
✓ Circular shadow patterns
✓ Systematic raised or depressed areas

Important context:
- This is imagery from the continental United States
- Sites here include Native American mounds, Mississippian earthworks, Hopewell geometric enclosures, and burial mounds
- Many sites are subtle and may appear as slight discolorations or elevation changes
✗ Natural features like glacial kettles, sinkholes, or erosion can mimic archaeological features - report these as low confidence
✗ Center-pivot irrigation circles, farm ponds, and modern field boundaries are NOT archaeological

For each potential feature found, estimate:
- Its type (mound, earthwork, cropmark, geometric, anomaly, other)
- Confidence level (low/medium/high) - be conservative, only use "high" for very clear features
- Approximate position in the image (x, y as 0-1 values where 0,0 is top-left)
- Estimated size in meters (rough estimate)
- Brief description of why this appears archaeological

If the image shows no potential archaeological features, that's completely fine - most terrain has no sites.

Respond ONLY with JSON in this exact format:
{"features": [{"type": "mound", "confidence": "medium", "location": {"x": 0.3, "y": 0.6}, "sizeMeters": 25, "description": "Circular elevated feature with regular profile and vegetation difference"}], "overallAssessment": "Brief 1-2 sentence summary of the area"}

If no features found, respond with:
{"features": [], "overallAssessment": "No potential archaeological features identified in this imagery."}"""


def get_prompt_config():
    """Bundle the prompts the detector sends on every call."""
    return {
        "system_prompt": get_system_prompt(),
        "detection_prompt": get_archaeological_prompt(),
    }
