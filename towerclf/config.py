"""
Shared config for the tower classifier run: default parameters, folder names,
artifact names and the supported backbone / optimizer names.
"""

from pathlib import Path

# Base dir: repository root (one level above towerclf/)
_BASE = Path(__file__).resolve().parent.parent

# Data: <img_base_dir>/<img_dir>/{train,validation}/{tower,notower}
IMG_BASE_DIR = _BASE / "data" / "model-training-data"
IMG_DIR = "slices_curated_2019-05-16"
OUTPUT_DIR = _BASE / "output" / "multi-model-runs"

TRAIN_SUBDIR = "train"
VALID_SUBDIR = "validation"
POSITIVE_CLASS = "tower"     # label 1
NEGATIVE_CLASS = "notower"   # label 0

# Images: (height, width), same order as keras target_size
IMG_SIZE = (50, 50)
BATCH_SIZE = 32

# Artifacts written into each run directory
MODEL_STRUCTURE_FILE = "model-structure.txt"
PREDICTIONS_FILE = "predicted-probs.csv"
CONFUSION_FILE = "valid-confusion-matrix.csv"
RUN_PARAMS_FILE = "run-parameters.txt"
RUN_PARAMS_JSON = "run-parameters.json"
DISTRIBUTION_PLOT_FILE = "predicted-probs-hist.png"

# name -> keras.applications attribute
BACKBONES = {
    "vgg16": "VGG16",
    "vgg19": "VGG19",
    "resnet50": "ResNet50",
    "resnet50_v2": "ResNet50V2",
    "inception_v3": "InceptionV3",
    "inception_resnet_v2": "InceptionResNetV2",
    "xception": "Xception",
    "mobilenet": "MobileNet",
    "mobilenet_v2": "MobileNetV2",
    "densenet121": "DenseNet121",
    "efficientnet_b0": "EfficientNetB0",
}

# name -> keras.optimizers attribute
OPTIMIZERS = {
    "sgd": "SGD",
    "rmsprop": "RMSprop",
    "adam": "Adam",
    "adamw": "AdamW",
    "adadelta": "Adadelta",
    "adagrad": "Adagrad",
    "adamax": "Adamax",
    "nadam": "Nadam",
    "ftrl": "Ftrl",
}

# Training stages, in run order
STAGE_PREFIXES = ("dense", "first_ft", "second_ft")

DEFAULT_PARAMS = {
    # directories
    "img_base_dir": str(IMG_BASE_DIR),
    "img_dir": IMG_DIR,
    "output_dir": str(OUTPUT_DIR),

    # images
    "img_size": IMG_SIZE,
    "img_horizontal_flip": False,
    "img_vertical_flip": False,
    "batch_size": BATCH_SIZE,
    "positive_class": POSITIVE_CLASS,
    "negative_class": NEGATIVE_CLASS,

    # model
    "base_model": "vgg16",
    "save_best_model_only": True,
    "add_small_final_layer": False,
    "small_layer_size": None,
    "dense_structure": [
        {"units": 256, "dropout": 0.2},
        {"units": 128, "dropout": 0.2},
    ],

    # dense head
    "dense_optimizer": "rmsprop",
    "dense_lr": 1e-5,
    "dense_steps_per_epoch": 100,
    "dense_epochs": 50,
    "dense_validation_steps": 50,

    # first fine-tune
    "first_ft_unfreeze": "block4_conv1",
    "first_ft_optimizer": "rmsprop",
    "first_ft_lr": 1e-5,
    "first_ft_steps_per_epoch": 100,
    "first_ft_epochs": 50,
    "first_ft_validation_steps": 50,

    # second fine-tune
    "do_second_ft": False,
    "second_ft_unfreeze": "block3_conv1",
    "second_ft_optimizer": "rmsprop",
    "second_ft_lr": 5e-6,
    "second_ft_steps_per_epoch": 100,
    "second_ft_epochs": 50,
    "second_ft_validation_steps": 50,

    # only applied while training the dense head
    "class_weights": {1: 10, 0: 1},
}
