"""
Collection configuration tests
"""

import json

import pytest

from caGraph.collection_config import DEFAULTS, CollectionConfig


class TestCollectionConfig:

    def test_defaults(self):
        config = CollectionConfig()

        assert config.max_depth == 10
        assert config.checkpoint_every == 25
        assert config.output_dir == 'output'
        assert config.proxy is None
        assert config.validate() == (True, [])

    def test_from_file(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'max_depth': 4, 'expand_roles': False}), encoding='utf-8')

        config = CollectionConfig.from_file(str(path))

        assert config.max_depth == 4
        assert config.expand_roles is False
        assert config.expand_groups is True

    def test_from_file_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CollectionConfig.from_file(str(tmp_path / 'nope.json'))

    def test_from_file_requires_object(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('[1, 2]', encoding='utf-8')

        with pytest.raises(ValueError):
            CollectionConfig.from_file(str(path))

    def test_merge_ignores_none(self):
        config = CollectionConfig({'max_depth': 4}).merge({'max_depth': None, 'output_dir': 'out'})

        assert config.max_depth == 4
        assert config.output_dir == 'out'

    def test_validate_reports_every_error(self):
        config = CollectionConfig({'max_depth': 0, 'checkpoint_every': 'often', 'write_csv': 'yes',
                                   'proxy': 'localhost', 'colour': 'blue'})

        is_valid, errors = config.validate()

        assert is_valid is False
        assert len(errors) == 5
        assert 'Unknown config key: colour' in errors

    def test_bool_is_not_a_depth(self):
        assert CollectionConfig({'max_depth': True}).validate()[0] is False

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / 'saved.json'
        CollectionConfig({'max_depth': 3}).save(str(path))

        assert json.loads(path.read_text(encoding='utf-8')) == dict(DEFAULTS, max_depth=3)

    def test_unknown_attribute(self):
        with pytest.raises(AttributeError):
            CollectionConfig().threads
