import json
import os

from assignment import Assignment
from file_sd import SHARD_LABEL, FileSDWriter, render
from target_registry import TargetRegistry


def registry_with_targets():
    reg = TargetRegistry(label_selector=('__address__',))
    reg.upsert('t1', {'__address__': '10.0.0.1:9100', 'job': 'node'})
    reg.upsert('t2', {'__address__': '10.0.0.2:9100', 'job': 'node'})
    reg.upsert('t3', {'__address__': '10.0.0.3:9100', 'job': 'api'})
    return reg


def test_render_groups_by_shard():
    reg = registry_with_targets()
    a = Assignment({'t2': 'prom-a', 't1': 'prom-a', 't3': 'prom-b'}, version=2)
    out = render(a, reg.snapshot(), shards=['prom-a', 'prom-b', 'prom-c'])
    assert out['prom-c'] == []
    assert [g['targets'] for g in out['prom-a']] == [['10.0.0.1:9100'], ['10.0.0.2:9100']]
    assert out['prom-b'][0]['labels'] == {'job': 'api', SHARD_LABEL: 'prom-b'}


def test_render_skips_unknown_targets():
    reg = registry_with_targets()
    out = render(Assignment({'gone': 'prom-a'}), reg.snapshot())
    assert out == {'prom-a': []}


def test_writer_writes_one_file_per_shard(tmp_path):
    reg = registry_with_targets()
    writer = FileSDWriter(str(tmp_path / 'sd'))
    a = Assignment({'t1': 'prom-a', 't2': 'prom-b', 't3': 'prom-b'}, version=1)
    paths = writer.write(a, reg.snapshot(), shards=['prom-a', 'prom-b'])

    assert sorted(paths) == ['prom-a', 'prom-b']
    with open(paths['prom-b']) as f:
        groups = json.load(f)
    assert len(groups) == 2
    assert writer.read_shard('prom-a')[0]['targets'] == ['10.0.0.1:9100']
    assert writer.read_shard('prom-z') is None
    assert not [n for n in os.listdir(tmp_path / 'sd') if n.startswith('.tmp-')]


def test_target_without_address_uses_id():
    reg = TargetRegistry()
    reg.upsert('stream-1', {'job': 'push'})
    out = render(Assignment({'stream-1': 'a'}), reg.snapshot())
    assert out['a'][0]['targets'] == ['stream-1']


def test_similar_shard_ids_get_separate_files(tmp_path):
    reg = registry_with_targets()
    writer = FileSDWriter(str(tmp_path / 'sd'))
    assert writer.path_for('a:b') != writer.path_for('a_b')
    assert writer.path_for('a/b') != writer.path_for('a_b')
    assert os.path.dirname(writer.path_for('a/b')) == str(tmp_path / 'sd')

    a = Assignment({'t1': 'a:b', 't2': 'a_b', 't3': 'a/b'}, version=1)
    writer.write(a, reg.snapshot())
    assert writer.read_shard('a:b')[0]['targets'] == ['10.0.0.1:9100']
    assert writer.read_shard('a_b')[0]['targets'] == ['10.0.0.2:9100']
    assert writer.read_shard('a/b')[0]['targets'] == ['10.0.0.3:9100']
