from argparse import ArgumentParser

from SemiFlow.simulation import Simulation


def get_parser():

    parser = ArgumentParser()
    required = parser.add_argument_group('required arguments')
    required.add_argument('-i', '--input',
                          dest="filename",
                          help="YAML input file",
                          required=True)

    return parser


if __name__ == "__main__":

    parser = get_parser()
    args = parser.parse_args()
    simulation = Simulation.from_yaml(args.filename)
    simulation.run()
