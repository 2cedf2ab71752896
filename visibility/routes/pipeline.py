"""
Pipeline routes — JSON API over the coordinator.
"""
import logging

from flask import Blueprint, request, jsonify

from visibility.errors import (
    BrandNotFound, PipelineConflict, PipelineNotFound, ReportNotFound, UnknownProfile,
)
from visibility.pipeline import coordinator
from visibility.pipeline.scoring import benchmark_score, get_score_trend

logger = logging.getLogger('routes.pipeline')

bp = Blueprint('pipeline', __name__)


# ── Pipelines ────────────────────────────────────────────────────────────────

@bp.route('/api/pipelines', methods=['POST'])
def create_pipeline():
    """Start a pipeline for a brand."""
    data = request.get_json(silent=True) or {}
    brand_id = data.get('brand_id')
    if not brand_id:
        return jsonify({'error': 'brand_id is required'}), 400

    try:
        started = coordinator.enqueue_pipeline(
            brand_id,
            profile=data.get('profile', 'standard'),
            options=data.get('options') or {},
        )
    except UnknownProfile as e:
        return jsonify({'error': str(e)}), 400
    except BrandNotFound as e:
        return jsonify({'error': str(e)}), 404
    except PipelineConflict as e:
        return jsonify({'error': str(e)}), 409
    except Exception as e:
        logger.error("Failed to start pipeline for brand %s", brand_id, exc_info=True)
        return jsonify({'error': str(e)}), 500

    return jsonify(started), 202


@bp.route('/api/pipelines/<pipeline_id>')
def pipeline_status(pipeline_id):
    try:
        return jsonify(coordinator.get_pipeline_status(pipeline_id))
    except PipelineNotFound:
        return jsonify({'error': 'Pipeline not found'}), 404


@bp.route('/api/pipelines/<pipeline_id>/cancel', methods=['POST'])
def cancel_pipeline(pipeline_id):
    try:
        return jsonify(coordinator.cancel_pipeline(pipeline_id))
    except PipelineNotFound:
        return jsonify({'error': 'Pipeline not found'}), 404


@bp.route('/api/pipeline-info')
def pipeline_info():
    """Handler registry, for dashboards."""
    from visibility.pipeline.worker import handler_info
    return jsonify(handler_info())


# ── Scores & reports ─────────────────────────────────────────────────────────

@bp.route('/api/brands/<brand_id>/score')
def latest_score(brand_id):
    score = coordinator.get_latest_score(brand_id)
    if score is None:
        return jsonify({'error': 'No score for brand'}), 404
    score['trend'] = get_score_trend(brand_id, engine=score['engine'])
    score['benchmark'] = benchmark_score(score['total_score'])
    return jsonify(score)


@bp.route('/api/reports/<report_id>')
def get_report(report_id):
    try:
        return jsonify(coordinator.get_report(report_id))
    except ReportNotFound:
        return jsonify({'error': 'Report not found'}), 404
