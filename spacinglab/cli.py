"""Command line interface for SpacingLab."""

import json
import os

import click
import yaml

from .engine import Engine


@click.group()
@click.version_option(package_name="spacinglab")
def cli():
    """SpacingLab - Birthday Spacings randomness test."""
    pass


def _load_config(config_path):
    """Load a YAML (.yaml/.yml) or JSON configuration file into a dict."""
    if not config_path:
        return {}
    _, ext = os.path.splitext(config_path.lower())
    with open(config_path, 'r', encoding='utf-8') as cf:
        if ext in ('.yaml', '.yml'):
            conf = yaml.safe_load(cf) or {}
        else:
            conf = json.load(cf) or {}
    if not isinstance(conf, dict):
        raise click.BadParameter("configuration file must contain a mapping at top level")
    return conf


def _normalize_tests_entry(t):
    """Normalize a single test entry which may be either a string or a dict."""
    if isinstance(t, str):
        return {'name': t, 'params': {}}
    if isinstance(t, dict):
        return {'name': t.get('name'), 'params': dict(t.get('params') or {})}
    raise ValueError("Invalid test entry type")


def _write_json(path, output):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(output, f, indent=2)


@cli.command()
@click.option('--generator', '-g', 'generator', type=click.Choice(['lcg', 'python', 'system', 'hash_ctr'], case_sensitive=True),
              default=None, help='Bundled generator to test (default: python)')
@click.option('--seed', type=int, default=None, help='Generator seed (lcg, python, hash_ctr)')
@click.option('--bits', type=int, default=None, help='Output width of the generator in bits (default: 32)')
@click.option('--birthdays', '-b', type=int, default=None, help='Birthdays drawn per trial (default: 4096)')
@click.option('--observations', '-k', type=int, default=None, help='Number of trials (default: 5000)')
@click.option('--repeats', '-r', type=int, default=None, help='Independent runs; more than one adds a KS check of the p-values')
@click.option('--min-expected', 'min_expected', type=float, default=None,
              help='Pool histogram bins until each expects at least this many trials')
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), default=None,
              help='Path to YAML or JSON configuration file; birthdays and observations must be integers there, not strings')
@click.option('--out', '-o', 'output_file', type=click.Path(), default=None, help='Write the JSON report to this path')
@click.option('--log-level', 'log_level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=True),
              default='INFO', help='Logging level for the spacinglab logger')
@click.option('--log-path', 'log_path', type=click.Path(), default=None, help='Append JSONL log records to this file')
def run(generator, seed, bits, birthdays, observations, repeats, min_expected, config_path, output_file, log_level, log_path):
    """Run the Birthday Spacings test against a bundled generator.

    Values given on the command line override those from --config.
    """
    engine = Engine()
    try:
        conf = _load_config(config_path)
        gen_conf = dict(conf.get('generator') or {})
        for key, value in (('type', generator), ('seed', seed), ('bits', bits)):
            if value is not None:
                gen_conf[key] = value
        conf['generator'] = gen_conf
        for key, value in (('birthdays', birthdays), ('observations', observations),
                           ('repeats', repeats), ('min_expected', min_expected)):
            if value is not None:
                conf[key] = value
        conf['log_level'] = log_level
        if log_path:
            conf['log_path'] = log_path

        output = engine.evaluate(conf)

        for r in output['results']:
            verdict = 'PASS' if r['passed'] else 'FAIL'
            click.echo(f"{gen_conf.get('type', 'python')}: p-value = {r['p_value']:.6g} "
                       f"(lambda = {r['metrics']['lambda']:g}, max duplicates = {r['metrics']['max_duplicates']}) {verdict}")
        if 'ks' in output:
            click.echo(f"KS uniformity of p-values: D = {output['ks']['statistic']:.4g}, p-value = {output['ks']['p_value']:.6g}")
        if output_file:
            _write_json(output_file, output)
            click.echo(f"Results written to {output_file}")
    except Exception as e:
        click.echo(f"Error during run: {e}", err=True)
        raise click.Abort()
    finally:
        engine.close()


@cli.command()
@click.argument('input_file', type=click.Path(exists=True))
@click.option('--out', '-o', 'output_file', type=click.Path(), default='report.json', help='Output JSON file path')
@click.option('--bits', type=int, default=None, help='Word width in bits, multiple of 8 (default: 24)')
@click.option('--birthdays', '-b', type=int, default=None, help='Birthdays per trial (default: 512)')
@click.option('--observations', '-k', type=int, default=None, help='Number of trials (default: as many as the file holds)')
@click.option('--min-expected', 'min_expected', type=float, default=None,
              help='Pool histogram bins until each expects at least this many trials')
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), default=None,
              help='Path to YAML or JSON configuration file specifying tests; integer params must be YAML integers, not strings')
@click.option('--log-level', 'log_level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=True),
              default='INFO', help='Logging level for the spacinglab logger')
def analyze(input_file, output_file, bits, birthdays, observations, min_expected, config_path, log_level):
    """Analyze a binary file by reading it as a stream of fixed-width words."""
    engine = Engine()
    try:
        with open(input_file, 'rb') as f:
            input_bytes = f.read()

        file_conf = _load_config(config_path)
        tests = [_normalize_tests_entry(t) for t in (file_conf.get('tests') or ['birthday_spacings'])]
        for t in tests:
            for key, value in (('bits', bits), ('birthdays', birthdays),
                               ('observations', observations), ('min_expected', min_expected)):
                if value is not None:
                    t['params'][key] = value

        merged_config = {'tests': tests, 'log_level': log_level}
        if 'log_path' in file_conf:
            merged_config['log_path'] = file_conf['log_path']

        output = engine.analyze(input_bytes, merged_config)
        _write_json(output_file, output)
        click.echo(f"Analysis complete. Results written to {output_file}")
    except Exception as e:
        click.echo(f"Error during analysis: {e}", err=True)
        raise click.Abort()
    finally:
        engine.close()


if __name__ == '__main__':
    cli()
