"""
HTTP API for the lyrics slide generator.

POST /api/process-lyrics  {text} | {texts}                     -> enrichment results (always 200)
POST /api/generate-pptx   {preview, metadata, templateBase64}  -> .pptx download

Usage:
    python server.py --port 5000
"""

import argparse
import base64
import binascii
import logging
from typing import Any, List, Tuple

from flask import Flask, Response, jsonify, request

import config
from deck_builder import LyricsDeckBuilder
from enricher import LyricsEnricher
from errors import LyricsSlidesError, RequestValidationError
from lyrics import LyricEntry, Metadata, entries_from_preview, lyric_lines, metadata_from_dict
from ooxml import PPTX_MIME_TYPE


logger = logging.getLogger(__name__)


def decode_template(template_base64: Any) -> bytes:
    """
    Decode the uploaded template.

    Accepts plain base64 or a data URL as produced by browser file readers.

    Raises:
        RequestValidationError: if the payload is missing, empty, not base64 or too large
    """
    if template_base64 is None:
        raise RequestValidationError("Template file is required. Please upload a template first.")
    if not isinstance(template_base64, str) or not template_base64.strip():
        raise RequestValidationError("Template file is invalid. Please upload a valid .pptx file.")

    payload = template_base64.strip()
    if payload.startswith('data:') and ',' in payload:
        payload = payload.split(',', 1)[1]
    payload = ''.join(payload.split())

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise RequestValidationError(
            "Template file is invalid. Please upload a valid .pptx file.", str(e)
        ) from e

    if not data:
        raise RequestValidationError("Template file is invalid. Please upload a valid .pptx file.")

    size_mb = len(data) / (1024 * 1024)
    if size_mb > config.MAX_TEMPLATE_MB:
        raise RequestValidationError(
            f"Template file ({size_mb:.2f} MB) exceeds the {config.MAX_TEMPLATE_MB}MB limit."
        )
    return data


def parse_generation_request(body: Any) -> Tuple[List[LyricEntry], Metadata, bytes]:
    """
    Validate a /api/generate-pptx payload before any template work starts.

    Returns:
        Tuple of (entries, metadata, template bytes)
    """
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object")

    preview = body.get("preview")
    if not preview or not isinstance(preview, list):
        raise RequestValidationError("Preview data is required")

    template_bytes = decode_template(body.get("templateBase64"))
    entries = entries_from_preview(preview)
    if not lyric_lines(entries):
        raise RequestValidationError("No lyric lines found")
    metadata = metadata_from_dict(body.get("metadata"))
    return entries, metadata, template_bytes


def create_app(enricher: LyricsEnricher = None) -> Flask:
    """
    Build the Flask application.

    Args:
        enricher: Enricher used by /api/process-lyrics (default: one built from the environment)
    """
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = (config.MAX_TEMPLATE_MB * 2) * 1024 * 1024
    state = {"enricher": enricher}

    def get_enricher() -> LyricsEnricher:
        if state["enricher"] is None:
            state["enricher"] = LyricsEnricher()
        return state["enricher"]

    @app.route("/api/process-lyrics", methods=["POST"])
    def process_lyrics():
        body = request.get_json(silent=True)
        return jsonify(get_enricher().process_request(body)), 200

    @app.route("/api/generate-pptx", methods=["POST"])
    def generate_pptx():
        body = request.get_json(silent=True)
        try:
            entries, metadata, template_bytes = parse_generation_request(body)
            logger.info(
                f"Generating PPTX: {len(entries)} preview items, "
                f"template {len(template_bytes)} bytes"
            )
            result = LyricsDeckBuilder(template_bytes).build(entries, metadata)
        except LyricsSlidesError as e:
            logger.warning(f"PPTX generation rejected: {e.message}")
            return jsonify(e.to_dict()), e.status_code
        except Exception as e:
            logger.exception("Error generating PPTX")
            return jsonify({"error": "Failed to generate PPTX", "details": str(e)}), 500

        response = Response(result.content, mimetype=PPTX_MIME_TYPE)
        response.headers["Content-Disposition"] = f'attachment; filename="{config.OUTPUT_FILENAME}"'
        response.headers["X-Slide-Count"] = str(result.slide_count)
        return response

    return app


def main():
    parser = argparse.ArgumentParser(description="Run the lyrics slide HTTP API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    config.setup_logging(args.debug)
    create_app().run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
