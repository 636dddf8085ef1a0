#!/usr/bin/env python3
import argparse
import os.path
import time

from GaugeScale import Gauge, OutFormat, Simulation, render_gauge, save_image


def main():
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--format',
                             choices=[f.value for f in OutFormat],
                             default=None,
                             help='Which format to render (all by default)')
    example_gauges = list(Gauge.example_names())
    args_parser.add_argument('--gauge',
                             choices=example_gauges,
                             default=None,
                             help='Which gauge model (all by default)')
    args_parser.add_argument('--simulate',
                             type=int,
                             default=20,
                             help='Simulated value updates for the second output of each gauge')
    cli_args = args_parser.parse_args()
    base_dir = os.path.relpath('examples/')
    os.makedirs(base_dir, exist_ok=True)
    out_formats = [next(f for f in OutFormat if f.value == cli_args.format)] if cli_args.format else OutFormat
    for gauge_name in ([cli_args.gauge] if cli_args.gauge else example_gauges):
        print(f'Building example outputs for: {gauge_name}')
        try:
            gauge = Gauge.load(gauge_name)
        except ValueError as e:
            print(f'Error loading {gauge_name}: {e}; Skipping')
            continue

        for out_format in out_formats:
            try:
                start_time = time.process_time()
                controller = gauge.controller()
                if controller.error:
                    print(f' Configuration error, using a linear scale: {controller.error}')
                save_image(render_gauge(gauge, out_format, controller.frame()),
                           os.path.join(base_dir, f'{gauge_name}.Gauge'))
                Simulation(controller, rate_hz=10, seed=0).run(cli_args.simulate)
                save_image(render_gauge(gauge, out_format, controller.frame()),
                           os.path.join(base_dir, f'{gauge_name}.Gauge.simulated'))
                print(f'Time elapsed: {round(time.process_time() - start_time, 3)}')
            except ValueError as e:
                print(f'Error processing {gauge_name}: {e}; Skipping')

if __name__ == '__main__':
    main()
