"""Tests for visibility.services.notifications — Slack pipeline alerts."""
from unittest.mock import patch

import requests

from visibility.services import notifications


PIPELINE = {'id': 'pipeline-0001', 'brand_id': 'brand-1', 'profile': 'lite'}


class TestNotifyComplete:

    def test_no_webhook_sends_nothing(self):
        with patch.object(notifications, 'SLACK_WEBHOOK_URL', None), \
             patch('visibility.services.notifications.requests.post') as post:
            notifications.notify_pipeline_complete(PIPELINE, {'score': 62})
        post.assert_not_called()

    def test_posts_summary_blocks(self):
        with patch.object(notifications, 'SLACK_WEBHOOK_URL', 'https://hooks.slack.test/x'), \
             patch('visibility.services.notifications.requests.post') as post:
            notifications.notify_pipeline_complete(PIPELINE, {
                'score': 62, 'totalSamples': 8, 'mentionRate': 0.5, 'costIncurred': 0.12,
            })
        blocks = post.call_args.kwargs['json']['blocks']
        assert 'brand-1' in blocks[0]['text']['text']
        fields = [f['text'] for f in blocks[1]['fields']]
        assert '*Score:* 62' in fields
        assert blocks[-1]['type'] == 'context'

    def test_webhook_error_is_swallowed(self):
        with patch.object(notifications, 'SLACK_WEBHOOK_URL', 'https://hooks.slack.test/x'), \
             patch('visibility.services.notifications.requests.post',
                   side_effect=requests.exceptions.ConnectionError("down")):
            notifications.notify_pipeline_complete(PIPELINE, {})


class TestNotifyFailed:

    def test_includes_stage_and_error(self):
        with patch.object(notifications, 'SLACK_WEBHOOK_URL', 'https://hooks.slack.test/x'), \
             patch('visibility.services.notifications.requests.post') as post:
            notifications.notify_pipeline_failed(PIPELINE, 'sample', 'Budget exceeded')
        blocks = post.call_args.kwargs['json']['blocks']
        assert '*Stage:* sample' in [f['text'] for f in blocks[1]['fields']]
        assert 'Budget exceeded' in blocks[2]['text']['text']
